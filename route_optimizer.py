"""
Stop ordering for collection routes.

Greedy nearest-neighbour tour from the depot over the bins a planner has
picked. Used as a best-effort capability: the route engine keeps the
planner's own order when ordering fails.
"""
from typing import List, Dict, Optional, Tuple
import math


class RouteOptimizer:
    """Orders route stops with a nearest-neighbour (K=1) search."""

    def __init__(self, depot_lat: float, depot_lon: float,
                 avg_speed_kmh: float = 30.0, service_time_min: float = 5.0):
        """
        Args:
            depot_lat: Depot latitude (start and end of every route)
            depot_lon: Depot longitude
            avg_speed_kmh: Average vehicle speed between stops
            service_time_min: Time spent emptying one bin
        """
        self.depot_lat = depot_lat
        self.depot_lon = depot_lon
        self.avg_speed_kmh = avg_speed_kmh
        self.service_time_min = service_time_min

    def haversine_distance(self, lat1: float, lon1: float,
                           lat2: float, lon2: float) -> float:
        """
        Calculate distance between two coordinates using Haversine formula.

        Returns:
            Distance in kilometers
        """
        R = 6371  # Earth radius in km

        dlat = math.radians(lat2 - lat1)
        dlon = math.radians(lon2 - lon1)

        a = (math.sin(dlat / 2) ** 2 +
             math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
             math.sin(dlon / 2) ** 2)

        c = 2 * math.asin(math.sqrt(a))
        return R * c

    def travel_minutes(self, distance_km: float) -> float:
        return (distance_km / self.avg_speed_kmh) * 60

    def find_nearest_neighbor(self, current: Tuple[float, float],
                              candidates: List[Dict]) -> Tuple[int, Optional[Dict]]:
        """
        Find the closest unvisited bin.

        Args:
            current: Current position (lat, lon)
            candidates: Bins still to visit, each with 'lat' and 'lon'

        Returns:
            Tuple of (index, bin_dict)
        """
        min_dist = float('inf')
        nearest_idx = -1
        nearest_bin = None

        for idx, bin_data in enumerate(candidates):
            dist = self.haversine_distance(
                current[0], current[1],
                bin_data['lat'], bin_data['lon']
            )

            if dist < min_dist:
                min_dist = dist
                nearest_idx = idx
                nearest_bin = bin_data

        return nearest_idx, nearest_bin

    def order_stops(self, bins: List[Dict]) -> List[Dict]:
        """
        Order bins into a tour starting at the depot.

        Args:
            bins: Dicts with 'bin_id', 'lat' and 'lon'. Every bin needs
                coordinates; a bin without them raises ValueError.

        Returns:
            Stops in visiting order with 'order_index' (from 1),
            'distance_from_prev_km' and 'est_duration_min'
        """
        missing = [b['bin_id'] for b in bins if b.get('lat') is None or b.get('lon') is None]
        if missing:
            raise ValueError(f"Bins without coordinates: {missing}")

        stops = []
        unvisited = list(bins)
        current_pos = (self.depot_lat, self.depot_lon)

        while unvisited:
            nearest_idx, nearest_bin = self.find_nearest_neighbor(
                current_pos, unvisited
            )

            distance = self.haversine_distance(
                current_pos[0], current_pos[1],
                nearest_bin['lat'], nearest_bin['lon']
            )

            stops.append({
                'order_index': len(stops) + 1,
                'bin_id': nearest_bin['bin_id'],
                'lat': nearest_bin['lat'],
                'lon': nearest_bin['lon'],
                'distance_from_prev_km': round(distance, 2),
                'est_duration_min': round(
                    self.travel_minutes(distance) + self.service_time_min, 1
                ),
            })

            current_pos = (nearest_bin['lat'], nearest_bin['lon'])
            unvisited.pop(nearest_idx)

        return stops

    def return_leg_km(self, stops: List[Dict]) -> float:
        if not stops:
            return 0.0
        last = stops[-1]
        return round(self.haversine_distance(
            last['lat'], last['lon'], self.depot_lat, self.depot_lon
        ), 2)

    def calculate_route_stats(self, stops: List[Dict]) -> Dict:
        """Totals for an ordered tour, including the drive back to the depot."""
        back_km = self.return_leg_km(stops)
        total_distance = sum(stop['distance_from_prev_km'] for stop in stops) + back_km
        total_time = (
            sum(stop['est_duration_min'] for stop in stops)
            + self.travel_minutes(back_km)
        )

        return {
            'total_stops': len(stops),
            'total_distance_km': round(total_distance, 2),
            'total_time_min': round(total_time, 1),
            'total_time_hours': round(total_time / 60, 2)
        }
