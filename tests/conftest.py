from datetime import datetime

import pytest

from app import create_app
from extensions import db
from models import RewardItem, User
from notifications import Notifier

NOW = datetime(2024, 5, 15, 12, 0)


class RecordingNotifier(Notifier):
    """Keeps every notification in memory instead of the database."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_id, type, title, message,
               priority="medium", related=None, now=None):
        record = {
            "recipient_id": recipient_id,
            "type": type,
            "title": title,
            "message": message,
            "priority": priority,
            "related": related or {},
        }
        self.sent.append(record)
        return record

    def of_type(self, type):
        return [n for n in self.sent if n["type"] == type]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(notifier):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "DEPOT_LAT": None,
            "DEPOT_LON": None,
            "LOG_LEVEL": "WARNING",
        },
        notifier=notifier,
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tracker(app):
    return app.extensions["collection"]["bins"]


@pytest.fixture
def ledger(app):
    return app.extensions["collection"]["ledger"]


@pytest.fixture
def schedules(app):
    return app.extensions["collection"]["schedules"]


@pytest.fixture
def routes(app):
    return app.extensions["collection"]["routes"]


@pytest.fixture
def make_user(app):
    def _make(name="Resident", role="resident", **fields):
        user = User(name=name, role=role, **fields)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def collector(make_user):
    return make_user("Collector", role="garbage_collector")


@pytest.fixture
def resident(make_user):
    return make_user("Resident")


@pytest.fixture
def make_bin(tracker):
    counter = {"n": 0}

    def _make(fill_level=None, lat=None, lon=None, capacity_litres=120, **fields):
        counter["n"] += 1
        bin_obj = tracker.register_bin(
            f"BIN-{counter['n']:03d}",
            latitude=lat,
            longitude=lon,
            capacity_litres=capacity_litres,
            **fields,
        )
        if fill_level is not None:
            tracker.report_fill_level(bin_obj.id, fill_level, now=NOW)
        return bin_obj
    return _make


@pytest.fixture
def make_item(app):
    def _make(points_cost=50, remaining_quantity=-1, is_active=True,
              valid_until=datetime(2030, 1, 1), name="Coffee voucher"):
        item = RewardItem(
            name=name,
            points_cost=points_cost,
            total_quantity=remaining_quantity,
            remaining_quantity=remaining_quantity,
            is_active=is_active,
            valid_until=valid_until,
        )
        db.session.add(item)
        db.session.commit()
        return item
    return _make
