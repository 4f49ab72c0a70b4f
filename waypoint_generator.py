# Survey Mission Control - Waypoint Generation
# File: waypoint_generator.py

"""
Flight path generation for survey missions: grid (boustrophedon),
perimeter and crosshatch patterns, plus great-circle distance helpers.
"""

import math
from typing import List, Dict, Optional, Any, Tuple

from mission_core import Bounds, Location, MissionType, Waypoint, WaypointStatus

# 1 degree of latitude in meters
METERS_PER_DEGREE = 111320
EARTH_RADIUS_KM = 6371
CROSSHATCH_STEPS = 20


class WaypointGenerator:
    """Deterministic waypoint patterns for the mission planner"""

    @staticmethod
    def lane_spacing(altitude: float, overlap: float) -> float:
        """
        Distance between adjacent survey lanes in meters.

        The sensor footprint is taken as twice the flight altitude; overlap
        (percent) shrinks the spacing so neighbouring passes share coverage.
        """
        if altitude <= 0:
            raise ValueError(f"Altitude must be positive, got {altitude}")
        if not 0 <= overlap < 100:
            raise ValueError(f"Overlap must be in [0, 100), got {overlap}")
        return altitude * 2 * (1 - overlap / 100)

    @staticmethod
    def grid_dimensions(bounds: Bounds, spacing: float) -> Tuple[int, int]:
        """Rows and columns needed to cover bounds at the given spacing"""
        _require_ordered(bounds)
        lat_to_meters = METERS_PER_DEGREE
        lng_to_meters = METERS_PER_DEGREE * math.cos(math.radians((bounds.min_lat + bounds.max_lat) / 2))

        lat_span = (bounds.max_lat - bounds.min_lat) * lat_to_meters
        lng_span = (bounds.max_lng - bounds.min_lng) * lng_to_meters

        rows = math.ceil(lat_span / spacing) + 1
        cols = math.ceil(lng_span / spacing) + 1
        return rows, cols

    @staticmethod
    def generate_grid(bounds: Bounds, altitude: float, overlap: float = 70.0,
                      spacing: Optional[float] = None) -> List[Waypoint]:
        """Boustrophedon grid over the bounding box"""
        actual_spacing = spacing or WaypointGenerator.lane_spacing(altitude, overlap)
        rows, cols = WaypointGenerator.grid_dimensions(bounds, actual_spacing)

        lat_range = bounds.max_lat - bounds.min_lat
        lng_range = bounds.max_lng - bounds.min_lng

        waypoints = []
        for row in range(rows):
            lat = bounds.min_lat + (row / (rows - 1) if rows > 1 else 0) * lat_range

            # Even rows west to east, odd rows back
            columns = range(cols) if row % 2 == 0 else range(cols - 1, -1, -1)
            for col in columns:
                lng = bounds.min_lng + (col / (cols - 1) if cols > 1 else 0) * lng_range
                waypoints.append(_waypoint(len(waypoints), lat, lng, altitude))

        return waypoints

    @staticmethod
    def generate_perimeter(polygon: List[Location], altitude: float) -> List[Waypoint]:
        """Follow the polygon edges and return to the first vertex"""
        waypoints = [
            _waypoint(i, point.lat, point.lng, altitude)
            for i, point in enumerate(polygon)
        ]

        if polygon:
            waypoints.append(_waypoint(len(polygon), polygon[0].lat, polygon[0].lng, altitude))

        return waypoints

    @staticmethod
    def generate_crosshatch(bounds: Bounds, altitude: float,
                            steps: int = CROSSHATCH_STEPS) -> List[Waypoint]:
        """Two diagonals across the bounding box"""
        _require_ordered(bounds)
        lat_range = bounds.max_lat - bounds.min_lat
        lng_range = bounds.max_lng - bounds.min_lng
        waypoints = []

        for i in range(steps):
            ratio = i / (steps - 1)
            waypoints.append(_waypoint(
                len(waypoints),
                bounds.min_lat + ratio * lat_range,
                bounds.min_lng + ratio * lng_range,
                altitude
            ))

        for i in range(steps):
            ratio = i / (steps - 1)
            waypoints.append(_waypoint(
                len(waypoints),
                bounds.min_lat + ratio * lat_range,
                bounds.max_lng - ratio * lng_range,
                altitude
            ))

        return waypoints

    @staticmethod
    def generate_custom(points: List[Dict[str, Any]], altitude: float) -> List[Waypoint]:
        """Caller-supplied path; missing altitudes fall back to the mission altitude"""
        return [
            _waypoint(i, point['lat'], point['lng'], point.get('alt') or altitude)
            for i, point in enumerate(points)
        ]

    @staticmethod
    def generate_for_mission(mission_type: MissionType, altitude: float,
                             overlap: float = 70.0,
                             coordinates: Optional[List[Location]] = None,
                             bounds: Optional[Bounds] = None,
                             custom_waypoints: Optional[List[Dict[str, Any]]] = None) -> List[Waypoint]:
        """Pick the pattern for a mission type"""
        coordinates = coordinates or []

        if mission_type == MissionType.PERIMETER:
            return WaypointGenerator.generate_perimeter(coordinates, altitude)
        if mission_type == MissionType.CUSTOM:
            return WaypointGenerator.generate_custom(custom_waypoints or [], altitude)

        bounds = bounds or Bounds.from_coordinates(coordinates)
        if mission_type == MissionType.GRID:
            return WaypointGenerator.generate_grid(bounds, altitude, overlap)
        if mission_type == MissionType.CROSSHATCH:
            return WaypointGenerator.generate_crosshatch(bounds, altitude)

        raise ValueError(f"Unsupported mission type: {mission_type}")

    @staticmethod
    def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        """Haversine great-circle distance in kilometers"""
        d_lat = math.radians(lat2 - lat1)
        d_lng = math.radians(lng2 - lng1)

        a = (math.sin(d_lat / 2) ** 2 +
             math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
             math.sin(d_lng / 2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

        return EARTH_RADIUS_KM * c

    @staticmethod
    def path_distance(waypoints: List[Waypoint], upto: Optional[int] = None) -> float:
        """
        Length of the path in kilometers.

        With upto, only the legs leading to waypoint[upto] are summed, i.e.
        the distance flown once the drone has reached that waypoint.
        """
        last = len(waypoints) - 1 if upto is None else min(upto, len(waypoints) - 1)
        total = 0.0
        for i in range(max(last, 0)):
            total += WaypointGenerator.calculate_distance(
                waypoints[i].latitude, waypoints[i].longitude,
                waypoints[i + 1].latitude, waypoints[i + 1].longitude
            )
        return total


def _waypoint(sequence: int, lat: float, lng: float, altitude: float) -> Waypoint:
    return Waypoint(
        sequence_number=sequence,
        latitude=round(lat, 8),
        longitude=round(lng, 8),
        altitude=round(altitude, 2),
        status=WaypointStatus.PENDING
    )


def _require_ordered(bounds: Bounds):
    if bounds.min_lat > bounds.max_lat or bounds.min_lng > bounds.max_lng:
        raise ValueError(
            f"Bounds must have min <= max (lat {bounds.min_lat}..{bounds.max_lat}, "
            f"lng {bounds.min_lng}..{bounds.max_lng})"
        )
