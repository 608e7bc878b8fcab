from datetime import datetime, timedelta

import pytest

from errors import InvalidState, NotFound, ValidationFailure
from extensions import db
from models import Schedule, User
from schedule_engine import add_months, next_occurrence

from conftest import NOW


@pytest.fixture
def bin_obj(make_bin):
    return make_bin(fill_level=50)


def test_add_months_pins_to_month_end():
    assert add_months(datetime(2024, 1, 31, 9, 0)) == datetime(2024, 2, 29, 9, 0)
    assert add_months(datetime(2023, 12, 15)) == datetime(2024, 1, 15)


def test_next_occurrence():
    start = datetime(2024, 5, 1, 8, 30)
    assert next_occurrence(start, "none") is None
    assert next_occurrence(start, "daily") == datetime(2024, 5, 2, 8, 30)
    assert next_occurrence(start, "weekly") == datetime(2024, 5, 8, 8, 30)
    assert next_occurrence(start, "biweekly") == datetime(2024, 5, 15, 8, 30)
    assert next_occurrence(start, "monthly") == datetime(2024, 6, 1, 8, 30)


def test_create_defaults_priority_to_bin(schedules, bin_obj, collector, notifier):
    schedule = schedules.create(bin_obj.id, collector.id, NOW + timedelta(days=1), now=NOW)

    assert schedule.status == "pending"
    assert schedule.priority == bin_obj.priority == 5
    assert notifier.of_type("collection_scheduled")[0]["recipient_id"] == collector.id


def test_create_validation(schedules, bin_obj, collector, resident):
    tomorrow = NOW + timedelta(days=1)

    with pytest.raises(ValidationFailure):
        schedules.create(bin_obj.id, resident.id, tomorrow, now=NOW)
    with pytest.raises(ValidationFailure):
        schedules.create(bin_obj.id, collector.id, tomorrow, recurrence="hourly", now=NOW)
    with pytest.raises(ValidationFailure):
        schedules.create(bin_obj.id, collector.id, tomorrow,
                         time_window_start="10:00", time_window_end="09:00", now=NOW)
    with pytest.raises(NotFound):
        schedules.create(999, collector.id, tomorrow, now=NOW)


def test_one_pending_schedule_per_bin(schedules, bin_obj, collector):
    schedules.create(bin_obj.id, collector.id, NOW + timedelta(days=1), now=NOW)

    with pytest.raises(InvalidState):
        schedules.create(bin_obj.id, collector.id, NOW + timedelta(days=2), now=NOW)


def test_complete_one_off_schedule(schedules, bin_obj, collector):
    schedule = schedules.create(bin_obj.id, collector.id, NOW - timedelta(hours=1), now=NOW)

    done, following = schedules.complete(schedule.id, duration_minutes=4, now=NOW)

    assert following is None
    assert done.status == "completed"
    assert done.completed_at == NOW
    assert done.actual_fill_level == 50
    assert bin_obj.fill_level == 0
    assert bin_obj.status == "collected"
    assert bin_obj.last_collected == NOW


def test_recurring_successor_uses_original_date(schedules, bin_obj, collector):
    scheduled = NOW - timedelta(hours=1)
    schedule = schedules.create(
        bin_obj.id, collector.id, scheduled,
        time_window_start="08:00", time_window_end="10:00",
        recurrence="weekly", notes="Side gate", now=NOW,
    )

    _, following = schedules.complete(schedule.id, now=NOW)

    assert following.scheduled_date == scheduled + timedelta(days=7)
    assert following.status == "pending"
    assert following.collector_id == collector.id
    assert following.time_window_start == "08:00"
    assert following.recurrence == "weekly"
    assert following.notes == "Side gate"
    assert following.previous_schedule_id == schedule.id


def test_monthly_recurrence_clamps_day(schedules, bin_obj, collector):
    scheduled = datetime(2024, 1, 31, 9, 0)
    schedule = schedules.create(
        bin_obj.id, collector.id, scheduled, recurrence="monthly", now=scheduled
    )

    _, following = schedules.complete(schedule.id, now=scheduled + timedelta(hours=1))

    assert following.scheduled_date == datetime(2024, 2, 29, 9, 0)


def test_recurrence_stops_at_end_date(schedules, bin_obj, collector):
    scheduled = NOW - timedelta(hours=1)
    schedule = schedules.create(
        bin_obj.id, collector.id, scheduled, recurrence="daily",
        recurrence_end_date=scheduled + timedelta(hours=12), now=NOW,
    )

    _, following = schedules.complete(schedule.id, now=NOW)

    assert following is None
    assert Schedule.query.count() == 1


def test_overdue_schedule_becomes_missed(schedules, bin_obj, collector, notifier):
    schedule = schedules.create(
        bin_obj.id, collector.id, NOW - timedelta(days=2), recurrence="daily", now=NOW
    )

    assert schedules.get(schedule.id, now=NOW).status == "missed"
    assert Schedule.query.count() == 1
    assert notifier.of_type("collection_missed")[0]["recipient_id"] == collector.id

    with pytest.raises(InvalidState):
        schedules.complete(schedule.id, now=NOW)


def test_escalation_does_not_stack(schedules, bin_obj, collector):
    scheduled = NOW - timedelta(hours=5)
    schedule = schedules.create(bin_obj.id, collector.id, scheduled, priority=3, now=NOW)

    assert schedules.get(schedule.id, now=NOW).priority == 5
    assert schedules.get(schedule.id, now=NOW).priority == 5
    assert schedules.get(schedule.id, now=scheduled + timedelta(hours=9)).priority == 7
    assert schedule.base_priority == 3


def test_escalation_caps_at_ten(schedules, bin_obj, collector):
    scheduled = NOW - timedelta(hours=10)
    schedule = schedules.create(bin_obj.id, collector.id, scheduled, priority=8, now=NOW)

    assert schedules.get(schedule.id, now=NOW).priority == 10


def test_not_yet_due_schedule_is_untouched(schedules, bin_obj, collector):
    schedule = schedules.create(bin_obj.id, collector.id, NOW - timedelta(hours=1), priority=4, now=NOW)

    fetched = schedules.get(schedule.id, now=NOW)

    assert fetched.status == "pending"
    assert fetched.priority == 4


def test_review_all_summary(schedules, make_bin, collector):
    schedules.create(make_bin().id, collector.id, NOW - timedelta(days=3), now=NOW)
    schedules.create(make_bin().id, collector.id, NOW - timedelta(hours=6), priority=2, now=NOW)
    schedules.create(make_bin().id, collector.id, NOW + timedelta(days=1), now=NOW)

    assert schedules.review_all(now=NOW) == {"missed": 1, "escalated": 1}


def test_reschedule_pending(schedules, bin_obj, collector):
    schedule = schedules.create(
        bin_obj.id, collector.id, NOW, notes="Call ahead", now=NOW
    )
    new_date = NOW + timedelta(days=2)

    old, new = schedules.reschedule(schedule.id, new_date, reason="Truck broke down", now=NOW)

    assert old.status == "rescheduled"
    assert new.status == "pending"
    assert new.scheduled_date == new_date
    assert new.previous_schedule_id == old.id
    assert new.notes == "Rescheduled from 2024-05-15 12:00. Truck broke down\nCall ahead"
    assert Schedule.query.filter_by(status="pending").count() == 1


@pytest.mark.parametrize("status", ["missed", "rescheduled", "canceled"])
def test_reschedule_from_non_completed_states(schedules, bin_obj, collector, status):
    schedule = schedules.create(bin_obj.id, collector.id, NOW + timedelta(days=1), now=NOW)
    schedule.status = status
    db.session.commit()

    old, new = schedules.reschedule(schedule.id, NOW + timedelta(days=3), now=NOW)

    assert old.status == "rescheduled"
    assert new.status == "pending"
    assert Schedule.query.filter_by(status="pending").count() == 1


def test_reschedule_completed_fails(schedules, bin_obj, collector):
    schedule = schedules.create(bin_obj.id, collector.id, NOW, now=NOW)
    schedules.complete(schedule.id, now=NOW)

    with pytest.raises(InvalidState):
        schedules.reschedule(schedule.id, NOW + timedelta(days=1), now=NOW)
    assert Schedule.query.count() == 1


def test_cancel_only_pending(schedules, bin_obj, collector):
    schedule = schedules.create(bin_obj.id, collector.id, NOW + timedelta(days=1), now=NOW)

    canceled = schedules.cancel(schedule.id, reason="Bin moved", now=NOW)

    assert canceled.status == "canceled"
    assert "Canceled: Bin moved" in canceled.notes
    with pytest.raises(InvalidState):
        schedules.cancel(schedule.id, now=NOW)


def test_complete_rewards_reporter(schedules, tracker, make_bin, resident, collector):
    bin_obj = make_bin()
    tracker.report_fill_level(bin_obj.id, 90, reporter_id=resident.id, now=NOW)
    schedule = schedules.create(bin_obj.id, collector.id, NOW, now=NOW)

    schedules.complete(schedule.id, now=NOW)

    assert db.session.get(User, resident.id).reward_points == 10


def test_list_for_collector_applies_overdue_rule(schedules, make_bin, collector):
    schedules.create(make_bin().id, collector.id, NOW - timedelta(days=2), now=NOW)
    schedules.create(make_bin().id, collector.id, NOW + timedelta(days=1), now=NOW)

    pending = schedules.list_for_collector(collector.id, status="pending", now=NOW)
    missed = schedules.list_for_collector(collector.id, status="missed", now=NOW)

    assert len(pending) == 1
    assert len(missed) == 1
