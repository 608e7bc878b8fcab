"""
Pickup schedules for a bin/collector pair.

Terminal schedules are never moved to a new date: completion of a
recurring schedule and every reschedule create a successor row that
points back at its predecessor.
"""
import calendar
import math
import re
from datetime import datetime, timedelta
from typing import Optional

import structlog

from bin_tracker import clamp_fill_level
from errors import InvalidState, NotFound, ValidationFailure
from extensions import db
from models import RECURRENCES, Schedule, User, utcnow
from notifications import dispatch

logger = structlog.get_logger(__name__)

RECURRENCE_DAYS = {"daily": 1, "weekly": 7, "biweekly": 14}
ESCALATE_AFTER_HOURS = 2
MISSED_AFTER_HOURS = 24
MAX_PRIORITY = 10

TIME_WINDOW_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def add_months(value: datetime, months: int = 1) -> datetime:
    """Same day next month, pinned to the month's last day when it is shorter."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(scheduled_date: datetime, recurrence: str) -> Optional[datetime]:
    if recurrence == "none":
        return None
    if recurrence == "monthly":
        return add_months(scheduled_date)
    return scheduled_date + timedelta(days=RECURRENCE_DAYS[recurrence])


def review_overdue(schedule: Schedule, now: datetime) -> Optional[str]:
    """
    The single overdue rule for pending schedules.

    More than 24h past due the schedule becomes ``missed``; more than 2h
    past due its priority rises by one per two hours late, capped at 10.
    Returns ``"missed"``, ``"escalated"`` or None when nothing changed.
    Recomputing from ``base_priority`` keeps repeated reads from stacking
    the bump.
    """
    if schedule.status != "pending" or schedule.scheduled_date >= now:
        return None

    hours_past_due = (now - schedule.scheduled_date).total_seconds() / 3600
    if hours_past_due > MISSED_AFTER_HOURS:
        schedule.status = "missed"
        return "missed"
    if hours_past_due > ESCALATE_AFTER_HOURS:
        bumped = min(MAX_PRIORITY, schedule.base_priority + math.floor(hours_past_due / 2))
        if bumped != schedule.priority:
            schedule.priority = bumped
            return "escalated"
    return None


def _validate_time_window(start, end):
    for value in (start, end):
        if value is not None and not TIME_WINDOW_RE.match(value):
            raise ValidationFailure(f"Invalid time '{value}', expected HH:MM")
    if start and end and start >= end:
        raise ValidationFailure("time window must end after it starts")


class ScheduleEngine:

    def __init__(self, tracker, notifier=None):
        self.tracker = tracker
        self.notifier = notifier

    # ---------- Reads (overdue rule applied on every touch) ----------

    def _get(self, schedule_id) -> Schedule:
        schedule = db.session.get(Schedule, schedule_id)
        if schedule is None:
            raise NotFound(f"Schedule not found with id of {schedule_id}")
        return schedule

    def _touch(self, schedules, now):
        outcomes = [(s, review_overdue(s, now)) for s in schedules]
        changed = [(s, o) for s, o in outcomes if o]
        if not changed:
            return changed
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        for schedule, outcome in changed:
            logger.info(
                "schedule_overdue",
                schedule_id=schedule.id,
                outcome=outcome,
                priority=schedule.priority,
            )
            if outcome == "missed":
                dispatch(
                    self.notifier, schedule.collector_id, "collection_missed",
                    "Collection missed",
                    f"The pickup scheduled for {schedule.scheduled_date:%Y-%m-%d %H:%M} was missed.",
                    priority="high",
                    related={"schedule": schedule.id, "bin": schedule.bin_id},
                    now=now,
                )
        return changed

    def get(self, schedule_id, now=None) -> Schedule:
        schedule = self._get(schedule_id)
        self._touch([schedule], now or utcnow())
        return schedule

    def list_for_collector(self, collector_id, status=None, now=None):
        query = Schedule.query.filter_by(collector_id=collector_id)
        schedules = query.order_by(Schedule.scheduled_date).all()
        self._touch(schedules, now or utcnow())
        if status:
            schedules = [s for s in schedules if s.status == status]
        return schedules

    def review_all(self, now=None):
        """Sweep every pending schedule that is already past its date."""
        now = now or utcnow()
        overdue = (
            Schedule.query
            .filter(Schedule.status == "pending", Schedule.scheduled_date < now)
            .all()
        )
        changed = self._touch(overdue, now)
        summary = {"missed": 0, "escalated": 0}
        for _, outcome in changed:
            summary[outcome] += 1
        return summary

    # ---------- Transitions ----------

    def create(self, bin_id, collector_id, scheduled_date, time_window_start=None,
               time_window_end=None, priority=None, recurrence="none",
               recurrence_end_date=None, notes="", assigned_by_id=None, now=None):
        if not isinstance(scheduled_date, datetime):
            raise ValidationFailure("scheduled_date is required")
        if recurrence not in RECURRENCES:
            raise ValidationFailure(f"Unknown recurrence '{recurrence}'")
        if recurrence_end_date is not None and recurrence_end_date < scheduled_date:
            raise ValidationFailure("recurrence_end_date is before scheduled_date")
        if priority is not None and not 0 <= priority <= MAX_PRIORITY:
            raise ValidationFailure("priority must be between 0 and 10")
        _validate_time_window(time_window_start, time_window_end)

        bin_obj = self.tracker.get_active(bin_id)
        collector = db.session.get(User, collector_id)
        if collector is None:
            raise NotFound(f"User not found with id of {collector_id}")
        if collector.role != "garbage_collector":
            raise ValidationFailure(f"User {collector_id} is not a garbage collector")

        active = Schedule.query.filter_by(bin_id=bin_id, status="pending").first()
        if active is not None:
            raise InvalidState(
                f"Bin {bin_obj.bin_code} already has pending schedule {active.id}"
            )

        if priority is None:
            priority = bin_obj.priority

        schedule = Schedule(
            bin_id=bin_id,
            collector_id=collector_id,
            assigned_by_id=assigned_by_id,
            scheduled_date=scheduled_date,
            time_window_start=time_window_start,
            time_window_end=time_window_end,
            status="pending",
            base_priority=priority,
            priority=priority,
            recurrence=recurrence,
            recurrence_end_date=recurrence_end_date,
            notes=notes or "",
        )
        try:
            db.session.add(schedule)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "schedule_created",
            schedule_id=schedule.id,
            bin_id=bin_id,
            collector_id=collector_id,
            recurrence=recurrence,
        )
        self._announce(schedule, now)
        return schedule

    def complete(self, schedule_id, actual_fill_level=None, duration_minutes=None,
                 notes="", now=None):
        """
        Complete a pending schedule, empty its bin and, for recurring
        schedules, create the next occurrence from the original date.

        Returns ``(schedule, next_schedule)``; ``next_schedule`` is None when
        the schedule does not recur or the recurrence has ended.
        """
        now = now or utcnow()
        schedule = self._get(schedule_id)
        self._touch([schedule], now)
        if schedule.status != "pending":
            raise InvalidState(f"Schedule {schedule_id} is {schedule.status} and cannot be completed")
        if duration_minutes is not None and duration_minutes < 0:
            raise ValidationFailure("duration_minutes cannot be negative")

        bin_obj = self.tracker.get(schedule.bin_id)
        next_schedule = None
        try:
            schedule.status = "completed"
            schedule.completed_at = now
            schedule.duration_minutes = duration_minutes
            schedule.actual_fill_level = (
                clamp_fill_level(actual_fill_level)
                if actual_fill_level is not None else bin_obj.fill_level
            )
            self.tracker.record_collection(
                bin_obj,
                collector_id=schedule.collector_id,
                notes=notes,
                schedule_id=schedule.id,
                now=now,
            )

            next_date = next_occurrence(schedule.scheduled_date, schedule.recurrence)
            if next_date is not None and (
                schedule.recurrence_end_date is None
                or next_date <= schedule.recurrence_end_date
            ):
                next_schedule = self._successor(schedule, next_date, schedule.notes)

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "schedule_completed",
            schedule_id=schedule.id,
            bin_id=schedule.bin_id,
            next_schedule_id=next_schedule.id if next_schedule else None,
        )
        self.tracker.after_collection(schedule.bin_id, now=now)
        if next_schedule is not None:
            self._announce(next_schedule, now)
        return schedule, next_schedule

    def reschedule(self, schedule_id, new_date, reason="", now=None):
        """
        Close a schedule as ``rescheduled`` and open a pending one at
        ``new_date``. Returns ``(old_schedule, new_schedule)``.
        """
        now = now or utcnow()
        if not isinstance(new_date, datetime):
            raise ValidationFailure("new_date is required")

        schedule = self._get(schedule_id)
        self._touch([schedule], now)
        if schedule.status == "completed":
            raise InvalidState(f"Schedule {schedule_id} is completed and cannot be rescheduled")

        provenance = f"Rescheduled from {schedule.scheduled_date:%Y-%m-%d %H:%M}. {reason or ''}".strip()
        notes = f"{provenance}\n{schedule.notes}" if schedule.notes else provenance

        try:
            schedule.status = "rescheduled"
            new_schedule = self._successor(schedule, new_date, notes)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "schedule_rescheduled",
            schedule_id=schedule.id,
            new_schedule_id=new_schedule.id,
            new_date=new_date.isoformat(),
        )
        self._announce(new_schedule, now)
        return schedule, new_schedule

    def cancel(self, schedule_id, reason="", now=None) -> Schedule:
        now = now or utcnow()
        schedule = self._get(schedule_id)
        self._touch([schedule], now)
        if schedule.status != "pending":
            raise InvalidState(f"Schedule {schedule_id} is {schedule.status} and cannot be canceled")

        try:
            schedule.status = "canceled"
            if reason:
                schedule.notes = f"{schedule.notes}\nCanceled: {reason}".strip()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("schedule_canceled", schedule_id=schedule.id)
        return schedule

    # ---------- Helpers ----------

    def _successor(self, schedule: Schedule, scheduled_date: datetime, notes: str) -> Schedule:
        successor = Schedule(
            bin_id=schedule.bin_id,
            collector_id=schedule.collector_id,
            assigned_by_id=schedule.assigned_by_id,
            previous_schedule_id=schedule.id,
            scheduled_date=scheduled_date,
            time_window_start=schedule.time_window_start,
            time_window_end=schedule.time_window_end,
            status="pending",
            base_priority=schedule.priority,
            priority=schedule.priority,
            recurrence=schedule.recurrence,
            recurrence_end_date=schedule.recurrence_end_date,
            notes=notes,
        )
        db.session.add(successor)
        db.session.flush()
        return successor

    def _announce(self, schedule: Schedule, now=None):
        dispatch(
            self.notifier, schedule.collector_id, "collection_scheduled",
            "New collection scheduled",
            f"Pickup scheduled for {schedule.scheduled_date:%Y-%m-%d %H:%M}.",
            related={"schedule": schedule.id, "bin": schedule.bin_id},
            now=now,
        )
