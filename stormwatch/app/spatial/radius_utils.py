"""
radius_utils.py — Distances between storm reports and monitored properties.

Every notify radius in the system is in statute miles and every
coordinate in decimal degrees (WGS-84 as delivered by the storm feed).

Distance uses the haversine form of the great-circle distance on a
sphere of the Earth's mean radius:

    h = sin²(Δφ/2) + cos φ₁ · cos φ₂ · sin²(Δλ/2)
    d = 2R · asin(√h)

Against the ellipsoid this is off by < 0.5%, i.e. tens of metres at
the 1–15 mile radii reps configure.

Matching runs in two passes: the store narrows candidates with a
lat/lon box (index friendly), then each candidate is measured exactly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

EARTH_RADIUS_MILES: float = 3_958.7613  # mean radius, 6371.0088 km

Box = Tuple[float, float, float, float]


@dataclass(frozen=True)
class Coordinate:
    """A validated (latitude, longitude) pair."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range [-90, 90]: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range [-180, 180]: {self.longitude}")

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


def haversine_miles(origin: Coordinate, target: Coordinate) -> float:
    """
    Great-circle distance in miles, unrounded.

    Radius checks are inclusive and compare against this raw value, so
    no rounding happens here.

    >>> haversine_miles(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    half_dlat = (target.lat_rad - origin.lat_rad) / 2.0
    half_dlon = (target.lon_rad - origin.lon_rad) / 2.0
    h = math.sin(half_dlat) ** 2 + math.cos(origin.lat_rad) * math.cos(target.lat_rad) * math.sin(half_dlon) ** 2
    # float error can push h a hair past 1 for antipodal points
    return 2.0 * EARTH_RADIUS_MILES * math.asin(math.sqrt(min(1.0, h)))


def miles_per_degree_latitude() -> float:
    return EARTH_RADIUS_MILES * math.pi / 180.0


def bounding_box(center: Coordinate, radius_miles: float) -> Box:
    """
    (min_lat, max_lat, min_lon, max_lon) enclosing the circle around center.

    Always a superset of the circle. Near the poles the longitude span
    opens to the full range; edges are clamped to valid degrees.
    """
    lat_span = radius_miles / miles_per_degree_latitude()
    cos_lat = math.cos(center.lat_rad)
    lon_span = 180.0 if cos_lat < 1e-10 else min(180.0, lat_span / cos_lat)

    return (
        max(-90.0, center.latitude - lat_span),
        min(90.0, center.latitude + lat_span),
        max(-180.0, center.longitude - lon_span),
        min(180.0, center.longitude + lon_span),
    )
