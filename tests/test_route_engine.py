import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from errors import InvalidState, NotFound, ValidationFailure
from extensions import db
from models import BinCollection, RouteStop
from route_engine import completion_percent

from conftest import NOW


@pytest.fixture
def two_bins(make_bin):
    first = make_bin(fill_level=50, lat=0.0, lon=0.01, capacity_litres=100)
    second = make_bin(fill_level=80, lat=0.0, lon=0.02, capacity_litres=200)
    return first, second


@pytest.fixture
def started_route(routes, collector, two_bins):
    route = routes.plan(collector.id, [b.id for b in two_bins], now=NOW)
    return routes.start(route.id, now=NOW)


def test_completion_percent_rounds_half_up():
    assert completion_percent(0, 0) == 0
    assert completion_percent(1, 3) == 33
    assert completion_percent(2, 3) == 67
    assert completion_percent(1, 8) == 13
    assert completion_percent(4, 4) == 100


def test_plan_keeps_given_order_without_depot(routes, collector, two_bins, notifier):
    first, second = two_bins

    route = routes.plan(collector.id, [second.id, first.id], now=NOW)

    assert route.status == "planned"
    assert [s.bin_id for s in route.stops] == [second.id, first.id]
    assert [s.order_index for s in route.stops] == [1, 2]
    assert notifier.of_type("route_assigned")[0]["recipient_id"] == collector.id


def test_plan_orders_stops_from_depot(routes, collector, make_bin):
    far = make_bin(lat=0.0, lon=2.0)
    near = make_bin(lat=0.0, lon=1.0)

    route = routes.plan(collector.id, [far.id, near.id], depot=(0.0, 0.0), now=NOW)

    assert [s.bin_id for s in route.stops] == [near.id, far.id]
    assert route.start_lat == 0.0
    assert route.distance_km > 0


def test_plan_falls_back_when_coordinates_missing(routes, collector, make_bin):
    located = make_bin(lat=0.0, lon=1.0)
    unlocated = make_bin()

    route = routes.plan(collector.id, [unlocated.id, located.id], depot=(0.0, 0.0), now=NOW)

    assert [s.bin_id for s in route.stops] == [unlocated.id, located.id]


def test_plan_validation(routes, collector, resident, two_bins):
    first, _ = two_bins

    with pytest.raises(ValidationFailure):
        routes.plan(collector.id, [], now=NOW)
    with pytest.raises(ValidationFailure):
        routes.plan(collector.id, [first.id, first.id], now=NOW)
    with pytest.raises(ValidationFailure):
        routes.plan(resident.id, [first.id], now=NOW)
    with pytest.raises(ValidationFailure):
        routes.plan(collector.id, [first.id], vehicle_capacity=0, now=NOW)
    with pytest.raises(NotFound):
        routes.plan(collector.id, [999], now=NOW)


def test_start_only_from_planned(routes, started_route):
    assert started_route.status == "in-progress"
    assert started_route.actual_start_time == NOW

    with pytest.raises(InvalidState):
        routes.start(started_route.id, now=NOW)


def test_collect_requires_started_route(routes, collector, two_bins):
    route = routes.plan(collector.id, [b.id for b in two_bins], now=NOW)

    with pytest.raises(InvalidState):
        routes.collect_stop(route.id, two_bins[0].id, now=NOW)


def test_collect_stops_until_route_completes(routes, started_route, two_bins):
    first, second = two_bins

    route = routes.collect_stop(started_route.id, first.id, weight=8.0, now=NOW)
    assert route.status == "in-progress"
    assert route.completion_rate == 50
    assert route.current_capacity_used == pytest.approx(50.0)
    assert first.status == "collected"
    assert first.fill_level == 0

    route = routes.collect_stop(started_route.id, second.id, now=NOW)
    assert route.status == "completed"
    assert route.completion_rate == 100
    assert route.actual_end_time == NOW
    assert route.current_capacity_used == pytest.approx(210.0)

    history = BinCollection.query.filter_by(route_id=route.id).all()
    assert len(history) == 2


def test_collect_same_stop_twice(routes, started_route, two_bins):
    routes.collect_stop(started_route.id, two_bins[0].id, now=NOW)

    with pytest.raises(InvalidState):
        routes.collect_stop(started_route.id, two_bins[0].id, now=NOW)
    assert RouteStop.query.filter_by(collected=True).count() == 1


def test_concurrent_collect_of_same_stop(routes, started_route, two_bins):
    bin_obj = two_bins[0]
    stop = RouteStop.query.filter_by(route_id=started_route.id, bin_id=bin_obj.id).one()

    # Another request claims the stop after this session has read it
    db.session.execute(
        update(RouteStop)
        .where(RouteStop.id == stop.id)
        .values(collected=True)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(stop)
    set_committed_value(stop, "collected", False)

    with pytest.raises(InvalidState):
        routes.collect_stop(started_route.id, bin_obj.id, now=NOW)

    db.session.expire_all()
    assert BinCollection.query.count() == 0
    assert routes.get(started_route.id).current_capacity_used == 0
    assert bin_obj.fill_level == 50


def test_collect_bin_not_on_route(routes, started_route, make_bin):
    stranger = make_bin()

    with pytest.raises(ValidationFailure):
        routes.collect_stop(started_route.id, stranger.id, now=NOW)


def test_collect_rejects_negative_weight(routes, started_route, two_bins):
    with pytest.raises(ValidationFailure):
        routes.collect_stop(started_route.id, two_bins[0].id, weight=-1, now=NOW)


def test_end_after_auto_complete_fails(routes, started_route, two_bins):
    for bin_obj in two_bins:
        routes.collect_stop(started_route.id, bin_obj.id, now=NOW)

    with pytest.raises(InvalidState):
        routes.end(started_route.id, now=NOW)


def test_end_with_uncollected_stops(routes, collector, make_bin):
    bins = [make_bin(fill_level=40) for _ in range(3)]
    route = routes.plan(collector.id, [b.id for b in bins], now=NOW)
    routes.start(route.id, now=NOW)
    routes.collect_stop(route.id, bins[0].id, now=NOW)

    ended = routes.end(route.id, notes="Shift over", now=NOW)

    assert ended.status == "completed"
    assert ended.completion_rate == 33
    assert ended.notes == "Shift over"
    assert routes.stats(route.id)["collected_stops"] == 1


def test_end_planned_route_fails(routes, collector, two_bins):
    route = routes.plan(collector.id, [b.id for b in two_bins], now=NOW)

    with pytest.raises(InvalidState):
        routes.end(route.id, now=NOW)


def test_cancel(routes, collector, two_bins):
    route = routes.plan(collector.id, [b.id for b in two_bins], now=NOW)

    canceled = routes.cancel(route.id, reason="Vehicle down", now=NOW)

    assert canceled.status == "canceled"
    with pytest.raises(InvalidState):
        routes.start(route.id, now=NOW)
    with pytest.raises(InvalidState):
        routes.cancel(route.id, now=NOW)


def test_retire_bin_on_planned_route_fails(routes, tracker, collector, two_bins):
    routes.plan(collector.id, [b.id for b in two_bins], now=NOW)

    with pytest.raises(InvalidState):
        tracker.retire_bin(two_bins[0].id)


def test_collect_rewards_reporter(routes, tracker, collector, resident, make_bin):
    bin_obj = make_bin()
    tracker.report_fill_level(bin_obj.id, 88, reporter_id=resident.id, now=NOW)
    route = routes.plan(collector.id, [bin_obj.id], now=NOW)
    routes.start(route.id, now=NOW)

    routes.collect_stop(route.id, bin_obj.id, now=NOW)

    assert routes.tracker.ledger.balance(resident.id) == 10
