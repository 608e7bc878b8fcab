"""
Collection routes: an ordered list of bin stops driven by one collector.

planned --start--> in-progress --collect_stop*--> completed (all stops done)
                   in-progress --end----------> completed (explicit, any progress)
planned / in-progress --cancel--> canceled
"""
import math
from typing import Optional, Tuple

import structlog

from errors import InvalidState, NotFound, ValidationFailure
from extensions import db
from models import Route, RouteStop, User, utcnow
from notifications import dispatch
from route_optimizer import RouteOptimizer

logger = structlog.get_logger(__name__)

DEFAULT_STOP_MINUTES = 5.0


def completion_percent(collected: int, total: int) -> int:
    """Percentage of collected stops, halves rounded up."""
    if not total:
        return 0
    return int(math.floor(100 * collected / total + 0.5))


class RouteEngine:

    def __init__(self, tracker, notifier=None, depot: Optional[Tuple[float, float]] = None,
                 avg_speed_kmh: float = 30.0, default_vehicle_capacity: float = 10000.0):
        self.tracker = tracker
        self.notifier = notifier
        self.depot = depot
        self.avg_speed_kmh = avg_speed_kmh
        self.default_vehicle_capacity = default_vehicle_capacity

    def get(self, route_id) -> Route:
        route = db.session.get(Route, route_id)
        if route is None:
            raise NotFound(f"Route not found with id of {route_id}")
        return route

    def list_for_collector(self, collector_id, status=None):
        query = Route.query.filter_by(collector_id=collector_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Route.created_at.desc()).all()

    def plan(self, collector_id, bin_ids, name=None, vehicle_capacity=None,
             depot=None, planned_by_id=None, optimize=True, now=None) -> Route:
        """
        Create a planned route over ``bin_ids``.

        With a depot available the stops are re-ordered nearest-neighbour
        first; if that fails the given order is kept.
        """
        if not bin_ids:
            raise ValidationFailure("A route needs at least one bin")
        if len(set(bin_ids)) != len(bin_ids):
            raise ValidationFailure("A bin can only appear once per route")
        capacity = vehicle_capacity if vehicle_capacity is not None else self.default_vehicle_capacity
        if capacity <= 0:
            raise ValidationFailure("vehicle_capacity must be positive")

        collector = db.session.get(User, collector_id)
        if collector is None:
            raise NotFound(f"User not found with id of {collector_id}")
        if collector.role != "garbage_collector":
            raise ValidationFailure(f"User {collector_id} is not a garbage collector")

        bins = [self.tracker.get_active(bin_id) for bin_id in bin_ids]
        depot = depot or self.depot

        stops = [
            {
                'order_index': i + 1,
                'bin_id': b.id,
                'distance_from_prev_km': 0.0,
                'est_duration_min': DEFAULT_STOP_MINUTES,
            }
            for i, b in enumerate(bins)
        ]
        distance_km = 0.0
        estimated_min = DEFAULT_STOP_MINUTES * len(stops)

        if optimize and depot:
            optimizer = RouteOptimizer(depot[0], depot[1], avg_speed_kmh=self.avg_speed_kmh)
            try:
                stops = optimizer.order_stops([
                    {'bin_id': b.id, 'lat': b.latitude, 'lon': b.longitude}
                    for b in bins
                ])
                route_stats = optimizer.calculate_route_stats(stops)
                distance_km = route_stats['total_distance_km']
                estimated_min = route_stats['total_time_min']
            except Exception:
                logger.exception("route_optimization_failed", collector_id=collector_id)

        route = Route(
            name=name or f"Route - {len(stops)} bins",
            collector_id=collector_id,
            planned_by_id=planned_by_id,
            status="planned",
            vehicle_capacity=capacity,
            start_lat=depot[0] if depot else None,
            start_lon=depot[1] if depot else None,
            distance_km=distance_km,
            estimated_time_min=estimated_min,
        )
        try:
            db.session.add(route)
            db.session.flush()
            for stop_data in stops:
                db.session.add(RouteStop(
                    route_id=route.id,
                    bin_id=stop_data['bin_id'],
                    order_index=stop_data['order_index'],
                    distance_from_prev_km=stop_data['distance_from_prev_km'],
                    est_duration_min=stop_data['est_duration_min'],
                ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "route_planned",
            route_id=route.id,
            collector_id=collector_id,
            stops=len(stops),
            distance_km=distance_km,
        )
        dispatch(
            self.notifier, collector_id, "route_assigned",
            "New route assigned",
            f"{route.name} with {len(stops)} stops has been assigned to you.",
            related={"route": route.id},
            now=now,
        )
        return route

    def start(self, route_id, now=None) -> Route:
        now = now or utcnow()
        route = self.get(route_id)
        try:
            started = (
                Route.query
                .filter_by(id=route_id, status="planned")
                .update({Route.status: "in-progress", Route.actual_start_time: now})
            )
            if not started:
                raise InvalidState(f"Route {route_id} is {route.status}; only planned routes can start")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("route_started", route_id=route_id)
        return route

    def collect_stop(self, route_id, bin_id, weight=None, notes="",
                     location=None, now=None) -> Route:
        """
        Mark one stop collected.

        In order: record the bin collection, add the bin's load to the
        vehicle, recompute the completion rate and complete the route when
        no stop is left.
        """
        now = now or utcnow()
        route = self.get(route_id)
        if route.status != "in-progress":
            raise InvalidState(f"Route {route_id} is {route.status}; stops can only be collected in progress")
        if weight is not None and weight < 0:
            raise ValidationFailure("weight cannot be negative")

        stop = RouteStop.query.filter_by(route_id=route_id, bin_id=bin_id).first()
        if stop is None:
            raise ValidationFailure(f"Bin {bin_id} is not part of route {route_id}")
        if stop.collected:
            raise InvalidState(f"Bin {bin_id} has already been collected on route {route_id}")

        lat, lon = location if location else (None, None)
        try:
            claimed = (
                RouteStop.query
                .filter_by(id=stop.id, collected=False)
                .update({
                    RouteStop.collected: True,
                    RouteStop.collected_at: now,
                    RouteStop.waste_weight_kg: weight,
                    RouteStop.notes: notes or "",
                })
            )
            if not claimed:
                raise InvalidState(f"Bin {bin_id} has already been collected on route {route_id}")

            bin_obj = self.tracker.get(bin_id)
            load = (bin_obj.fill_level / 100) * bin_obj.capacity_litres

            self.tracker.record_collection(
                bin_obj,
                collector_id=route.collector_id,
                notes=notes,
                weight=weight,
                route_id=route_id,
                latitude=lat,
                longitude=lon,
                now=now,
            )

            Route.query.filter_by(id=route_id).update(
                {Route.current_capacity_used: Route.current_capacity_used + load}
            )

            total = RouteStop.query.filter_by(route_id=route_id).count()
            collected = RouteStop.query.filter_by(route_id=route_id, collected=True).count()
            changes = {Route.completion_rate: completion_percent(collected, total)}
            if collected == total:
                changes[Route.status] = "completed"
                changes[Route.actual_end_time] = now

            still_running = (
                Route.query
                .filter_by(id=route_id, status="in-progress")
                .update(changes)
            )
            if not still_running:
                raise InvalidState(f"Route {route_id} was closed while collecting")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "stop_collected",
            route_id=route_id,
            bin_id=bin_id,
            completion_rate=route.completion_rate,
            capacity_used=route.current_capacity_used,
        )
        if route.current_capacity_used > route.vehicle_capacity:
            logger.warning(
                "vehicle_over_capacity",
                route_id=route_id,
                capacity_used=route.current_capacity_used,
                vehicle_capacity=route.vehicle_capacity,
            )
        if route.status == "completed":
            logger.info("route_completed", route_id=route_id, via="all_stops_collected")

        self.tracker.after_collection(bin_id, now=now)
        return route

    def end(self, route_id, notes="", now=None) -> Route:
        """Close an in-progress route whether or not every stop was collected."""
        now = now or utcnow()
        route = self.get(route_id)
        changes = {Route.status: "completed", Route.actual_end_time: now}
        if notes:
            changes[Route.notes] = notes
        try:
            ended = (
                Route.query
                .filter_by(id=route_id, status="in-progress")
                .update(changes)
            )
            if not ended:
                raise InvalidState(f"Route {route_id} is {route.status}; only in-progress routes can end")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        remaining = sum(1 for s in route.stops if not s.collected)
        if remaining:
            logger.warning("route_ended_incomplete", route_id=route_id, uncollected_stops=remaining)
        logger.info("route_completed", route_id=route_id, via="end")
        return route

    def cancel(self, route_id, reason="", now=None) -> Route:
        route = self.get(route_id)
        changes = {Route.status: "canceled"}
        if reason:
            changes[Route.notes] = f"Canceled: {reason}"
        try:
            canceled = (
                Route.query
                .filter(Route.id == route_id, Route.status.in_(("planned", "in-progress")))
                .update(changes)
            )
            if not canceled:
                raise InvalidState(f"Route {route_id} is {route.status} and cannot be canceled")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("route_canceled", route_id=route_id)
        return route

    def stats(self, route_id):
        route = self.get(route_id)
        collected = sum(1 for s in route.stops if s.collected)
        return {
            "total_stops": len(route.stops),
            "collected_stops": collected,
            "completion_rate": route.completion_rate,
            "distance_km": route.distance_km,
            "estimated_time_min": route.estimated_time_min,
            "capacity_used": round(route.current_capacity_used, 2),
            "vehicle_capacity": route.vehicle_capacity,
        }
