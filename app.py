import os
from flask import Flask, jsonify

import structlog

from extensions import db
from errors import CollectionError
from logging_config import configure_logging

logger = structlog.get_logger(__name__)


def _env_float(name):
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else None


def load_config() -> dict:
    # Database configuration from environment (Render)
    database_url = os.environ.get("DATABASE_URL", "sqlite:///collection.db")

    # Render often provides postgres:// but SQLAlchemy expects postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return {
        "SQLALCHEMY_DATABASE_URI": database_url,
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "REPORT_REWARD_POINTS": int(os.environ.get("REPORT_REWARD_POINTS", 10)),
        "POINTS_EXPIRY_DAYS": int(os.environ.get("POINTS_EXPIRY_DAYS", 365)),
        "NOTIFICATION_DEDUP_MINUTES": int(os.environ.get("NOTIFICATION_DEDUP_MINUTES", 5)),
        "DEFAULT_VEHICLE_CAPACITY": float(os.environ.get("DEFAULT_VEHICLE_CAPACITY", 10000)),
        "DEPOT_LAT": _env_float("DEPOT_LAT"),
        "DEPOT_LON": _env_float("DEPOT_LON"),
        "AVG_SPEED_KMH": float(os.environ.get("AVG_SPEED_KMH", 30)),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO"),
    }


def build_engines(config, notifier=None) -> dict:
    """Wire the engines together. ``notifier`` replaces the database sink."""
    from bin_tracker import BinTracker
    from notifications import DatabaseNotifier
    from reward_ledger import RewardLedger
    from route_engine import RouteEngine
    from schedule_engine import ScheduleEngine

    if notifier is None:
        notifier = DatabaseNotifier(dedup_minutes=config["NOTIFICATION_DEDUP_MINUTES"])

    depot = None
    if config.get("DEPOT_LAT") is not None and config.get("DEPOT_LON") is not None:
        depot = (config["DEPOT_LAT"], config["DEPOT_LON"])

    ledger = RewardLedger(notifier, expiry_days=config["POINTS_EXPIRY_DAYS"])
    tracker = BinTracker(
        ledger, notifier, report_reward_points=config["REPORT_REWARD_POINTS"]
    )
    return {
        "notifier": notifier,
        "ledger": ledger,
        "bins": tracker,
        "schedules": ScheduleEngine(tracker, notifier),
        "routes": RouteEngine(
            tracker,
            notifier,
            depot=depot,
            avg_speed_kmh=config["AVG_SPEED_KMH"],
            default_vehicle_capacity=config["DEFAULT_VEHICLE_CAPACITY"],
        ),
    }


def create_app(test_config=None, notifier=None) -> Flask:
    app = Flask(__name__)

    app.config.update(load_config())
    if test_config:
        app.config.update(test_config)

    configure_logging(app.config["LOG_LEVEL"])

    # Initialize SQLAlchemy extension
    db.init_app(app)

    with app.app_context():
        # Import models so SQLAlchemy knows about them
        import models  # noqa: F401

        # Create tables if they do not exist yet
        db.create_all()

        app.extensions["collection"] = build_engines(app.config, notifier)

        # Register blueprints
        from routes.api import api_bp

        app.register_blueprint(api_bp)

    @app.errorhandler(CollectionError)
    def handle_collection_error(error):
        return jsonify({"error": error.message}), error.status_code

    logger.info("app_created", database=app.config["SQLALCHEMY_DATABASE_URI"].split(":")[0])
    return app
