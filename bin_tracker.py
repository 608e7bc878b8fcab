"""
Bin state tracking: fill level, derived priority and operational status.

Priority is never written on its own; it is recomputed from the fill level
and the last collection date every time either of them changes.
"""
import math
from typing import Optional

import structlog

from errors import InvalidState, NotFound, ValidationFailure
from extensions import db
from models import Bin, BinCollection, Route, RouteStop, Schedule, User, utcnow
from notifications import dispatch

logger = structlog.get_logger(__name__)

OVERFLOW_LEVEL = 90
EMPTY_LEVEL = 10
STALE_AFTER_DAYS = 5

# Statuses an operator may set by hand
MANUAL_STATUSES = ("pending", "in-progress", "maintenance")


def compute_priority(fill_level: float, days_since_last_collection: Optional[int] = None) -> int:
    """
    Collection priority in 0..10.

    Fill level picks the base tier; a bin not emptied for more than five
    whole days gets +3, capped at 10.
    """
    if fill_level > 80:
        priority = 10
    elif fill_level > 60:
        priority = 7
    elif fill_level > 40:
        priority = 5
    else:
        priority = 3

    if days_since_last_collection is not None and days_since_last_collection > STALE_AFTER_DAYS:
        priority = min(priority + 3, 10)
    return priority


def clamp_fill_level(level) -> int:
    try:
        value = float(level)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Invalid fill level: {level!r}")
    if math.isnan(value):
        raise ValidationFailure(f"Invalid fill level: {level!r}")
    if math.isfinite(value):
        value = int(round(value))
    clamped = int(max(0, min(100, value)))
    if clamped != value:
        logger.warning("fill_level_clamped", requested=level, clamped=clamped)
    return clamped


def derive_status(level: int, current: str) -> str:
    if level >= OVERFLOW_LEVEL:
        return "overflow"
    if level < EMPTY_LEVEL:
        return "collected"
    # Operator-set states survive ordinary readings
    if current in ("maintenance", "in-progress"):
        return current
    return "pending"


class BinTracker:

    def __init__(self, ledger=None, notifier=None, report_reward_points: int = 10):
        self.ledger = ledger
        self.notifier = notifier
        self.report_reward_points = report_reward_points

    def get(self, bin_id) -> Bin:
        bin_obj = db.session.get(Bin, bin_id)
        if bin_obj is None:
            raise NotFound(f"Bin not found with id of {bin_id}")
        return bin_obj

    def get_active(self, bin_id) -> Bin:
        bin_obj = self.get(bin_id)
        if not bin_obj.is_active:
            raise InvalidState(f"Bin {bin_obj.bin_code} has been retired")
        return bin_obj

    def refresh_priority(self, bin_obj: Bin, now=None) -> int:
        now = now or utcnow()
        days = None
        if bin_obj.last_collected:
            days = (now - bin_obj.last_collected).days
        bin_obj.priority = compute_priority(bin_obj.fill_level, days)
        return bin_obj.priority

    def register_bin(self, bin_code, latitude=None, longitude=None, address=None,
                     waste_type="mixed", capacity_litres=120,
                     assigned_collector_id=None) -> Bin:
        if not bin_code:
            raise ValidationFailure("bin_code is required")
        if capacity_litres is None or capacity_litres <= 0:
            raise ValidationFailure("capacity_litres must be positive")
        if Bin.query.filter_by(bin_code=bin_code).first():
            raise ValidationFailure(f"Bin {bin_code} already exists")

        bin_obj = Bin(
            bin_code=bin_code,
            latitude=latitude,
            longitude=longitude,
            address=address,
            waste_type=waste_type,
            capacity_litres=capacity_litres,
            assigned_collector_id=assigned_collector_id,
        )
        bin_obj.priority = compute_priority(0)
        try:
            db.session.add(bin_obj)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("bin_registered", bin_id=bin_obj.id, bin_code=bin_code)
        return bin_obj

    def report_fill_level(self, bin_id, level, reporter_id=None, now=None) -> int:
        """
        Record a fill-level reading and return the recomputed priority.

        A reading by a resident (``reporter_id``) opens a new report cycle
        and counts towards the resident's streak. Readings below the empty
        threshold never open a cycle.
        """
        now = now or utcnow()
        level = clamp_fill_level(level)
        bin_obj = self.get_active(bin_id)

        if reporter_id is not None and db.session.get(User, reporter_id) is None:
            raise NotFound(f"User not found with id of {reporter_id}")

        previous_status = bin_obj.status
        opens_cycle = reporter_id is not None and level >= EMPTY_LEVEL

        try:
            bin_obj.fill_level = level
            bin_obj.status = derive_status(level, previous_status)
            if opens_cycle:
                bin_obj.reported_by_id = reporter_id
                bin_obj.reward_assigned = False
            priority = self.refresh_priority(bin_obj, now)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "fill_level_reported",
            bin_id=bin_id,
            fill_level=level,
            status=bin_obj.status,
            priority=priority,
        )

        if opens_cycle and self.ledger is not None:
            try:
                self.ledger.apply_streak(reporter_id, now=now)
            except Exception:
                db.session.rollback()
                logger.exception("streak_update_failed", user_id=reporter_id, bin_id=bin_id)

        if bin_obj.status == "overflow" and previous_status != "overflow":
            dispatch(
                self.notifier, bin_obj.assigned_collector_id, "bin_overflow",
                "Bin overflowing",
                f"Bin {bin_obj.bin_code} is {level}% full and needs collection.",
                priority="urgent",
                related={"bin": bin_obj.id},
                now=now,
            )
        if bin_obj.status == "collected" and previous_status != "collected":
            self.settle_report_reward(bin_obj.id, now=now)

        return priority

    def record_collection(self, bin_obj: Bin, collector_id=None, fill_level_after=0,
                          notes="", weight=None, route_id=None, schedule_id=None,
                          latitude=None, longitude=None, now=None) -> BinCollection:
        """Empty the bin and append a history row. Caller commits."""
        now = now or utcnow()
        record = BinCollection(
            bin_id=bin_obj.id,
            collected_by_id=collector_id,
            route_id=route_id,
            schedule_id=schedule_id,
            collected_at=now,
            fill_level_before=bin_obj.fill_level,
            waste_weight_kg=weight,
            latitude=latitude if latitude is not None else bin_obj.latitude,
            longitude=longitude if longitude is not None else bin_obj.longitude,
            notes=notes or "",
        )
        db.session.add(record)

        bin_obj.fill_level = clamp_fill_level(fill_level_after or 0)
        bin_obj.status = "collected"
        bin_obj.last_collected = now
        self.refresh_priority(bin_obj, now)
        return record

    def mark_collected(self, bin_id, collector_id, report=None, now=None) -> Bin:
        now = now or utcnow()
        report = report or {}
        bin_obj = self.get_active(bin_id)

        try:
            self.record_collection(
                bin_obj,
                collector_id=collector_id,
                fill_level_after=report.get("fill_level_after", 0),
                notes=report.get("notes", ""),
                weight=report.get("weight"),
                route_id=report.get("route_id"),
                schedule_id=report.get("schedule_id"),
                now=now,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("bin_collected", bin_id=bin_id, collector_id=collector_id)
        self.after_collection(bin_obj.id, now=now)
        return bin_obj

    def after_collection(self, bin_id, now=None):
        """Best-effort follow-up once a collection has been committed."""
        self.settle_report_reward(bin_id, now=now)
        bin_obj = db.session.get(Bin, bin_id)
        if bin_obj is not None:
            dispatch(
                self.notifier, bin_obj.reported_by_id, "collection_completed",
                "Bin collected",
                f"Bin {bin_obj.bin_code} you reported has been collected.",
                related={"bin": bin_obj.id},
                now=now,
            )

    def settle_report_reward(self, bin_id, now=None):
        """
        Grant the reporter's base points once per report cycle.

        The flag is claimed with a guarded update in the same transaction
        as the grant, so repeated collection updates cannot pay twice.
        """
        if self.ledger is None:
            return None
        try:
            bin_obj = db.session.get(Bin, bin_id)
            if bin_obj is None or bin_obj.reported_by_id is None:
                return None
            claimed = (
                Bin.query
                .filter_by(id=bin_id, reward_assigned=False)
                .update({Bin.reward_assigned: True})
            )
            if not claimed:
                return None
            txn = self.ledger.credit(
                bin_obj.reported_by_id, self.report_reward_points, "earned",
                "bin_report", f"Reported bin {bin_obj.bin_code}",
                source_id=bin_obj.id, source_model="Bin", now=now,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("report_reward_failed", bin_id=bin_id)
            return None

        logger.info(
            "report_reward_granted",
            bin_id=bin_id,
            user_id=txn.user_id,
            points=txn.points,
        )
        return txn

    def set_status(self, bin_id, status) -> Bin:
        if status not in MANUAL_STATUSES:
            raise ValidationFailure(
                f"Status '{status}' can only be reached through a fill-level report or a collection"
            )
        bin_obj = self.get(bin_id)
        try:
            bin_obj.status = status
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("bin_status_set", bin_id=bin_id, status=status)
        return bin_obj

    def bins_needing_collection(self):
        bins = (
            Bin.query.filter_by(is_active=True)
            .order_by(Bin.priority.desc(), Bin.fill_level.desc())
            .all()
        )
        return [b for b in bins if b.needs_collection()]

    def retire_bin(self, bin_id):
        bin_obj = self.get(bin_id)

        pending = Schedule.query.filter_by(bin_id=bin_id, status="pending").count()
        active_routes = (
            RouteStop.query.join(Route)
            .filter(RouteStop.bin_id == bin_id)
            .filter(Route.status.in_(("planned", "in-progress")))
            .count()
        )
        if pending or active_routes:
            raise InvalidState(
                f"Bin {bin_obj.bin_code} is still referenced by "
                f"{pending} pending schedule(s) and {active_routes} active route(s)"
            )

        try:
            bin_obj.is_active = False
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("bin_retired", bin_id=bin_id)
        return bin_obj
