"""Geographic primitives: points, bounds, great-circle distance and parsing.

Everything here is pure and stateless. Distances are meters unless a unit is
named explicitly. Bounds whose ``min_lng`` exceeds ``max_lng`` describe a box
that crosses the antimeridian (the +/-180 degree meridian).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import math
from typing import Any

from terrasearch.exceptions import ValidationError


EARTH_RADIUS_METERS = 6_371_000.0
METERS_PER_KILOMETER = 1000.0
METERS_PER_MILE = 1609.344
FEET_PER_METER = 3.28084

_UNIT_ALIASES = {
    "m": "m",
    "meter": "m",
    "meters": "m",
    "metre": "m",
    "metres": "m",
    "km": "km",
    "kilometer": "km",
    "kilometers": "km",
    "kilometre": "km",
    "kilometres": "km",
    "mi": "mi",
    "mile": "mi",
    "miles": "mi",
    "ft": "ft",
    "foot": "ft",
    "feet": "ft",
}

_METERS_PER_UNIT = {
    "m": 1.0,
    "km": METERS_PER_KILOMETER,
    "mi": METERS_PER_MILE,
    "ft": 1.0 / FEET_PER_METER,
}


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """Return True when ``lat``/``lng`` are finite and inside the WGS84 ranges."""
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """A single WGS84 coordinate."""

    lat: float
    lng: float

    def __post_init__(self) -> None:
        if not is_valid_coordinate(self.lat, self.lng):
            raise ValidationError(f"Invalid coordinate: lat={self.lat!r}, lng={self.lng!r}")

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    def distance_to(self, other: GeoPoint) -> float:
        return distance(self, other)


@dataclass(frozen=True, slots=True)
class GeoBounds:
    """Latitude/longitude box. ``min_lng > max_lng`` means it crosses the antimeridian."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def __post_init__(self) -> None:
        if not (
            is_valid_coordinate(self.min_lat, self.min_lng) and is_valid_coordinate(self.max_lat, self.max_lng)
        ):
            raise ValidationError(f"Invalid bounds: {self.to_dict()!r}")
        if self.min_lat > self.max_lat:
            raise ValidationError(f"Bounds min_lat {self.min_lat} is above max_lat {self.max_lat}")

    @property
    def crosses_antimeridian(self) -> bool:
        return self.min_lng > self.max_lng

    def contains(self, point: GeoPoint) -> bool:
        if not self.min_lat <= point.lat <= self.max_lat:
            return False
        if self.crosses_antimeridian:
            return point.lng >= self.min_lng or point.lng <= self.max_lng
        return self.min_lng <= point.lng <= self.max_lng

    def intersects(self, other: GeoBounds) -> bool:
        """True when the boxes share at least one point; either may cross the antimeridian."""
        if self.max_lat < other.min_lat or other.max_lat < self.min_lat:
            return False
        return any(
            mine.min_lng <= theirs.max_lng and theirs.min_lng <= mine.max_lng
            for mine in self.split()
            for theirs in other.split()
        )

    def split(self) -> list[GeoBounds]:
        """Return one box, or two when this box crosses the antimeridian."""
        if not self.crosses_antimeridian:
            return [self]
        return [
            GeoBounds(self.min_lat, self.max_lat, self.min_lng, 180.0),
            GeoBounds(self.min_lat, self.max_lat, -180.0, self.max_lng),
        ]

    def nearest_point(self, point: GeoPoint) -> GeoPoint:
        """Closest point of the box to ``point`` (the point itself when inside)."""
        lat = min(max(point.lat, self.min_lat), self.max_lat)
        if self.contains(GeoPoint(lat, point.lng)):
            return GeoPoint(lat, point.lng)
        to_min = _longitude_gap(point.lng, self.min_lng)
        to_max = _longitude_gap(point.lng, self.max_lng)
        return GeoPoint(lat, self.min_lng if to_min <= to_max else self.max_lng)

    def to_dict(self) -> dict[str, float]:
        return {
            "min_lat": self.min_lat,
            "max_lat": self.max_lat,
            "min_lng": self.min_lng,
            "max_lng": self.max_lng,
        }


def _longitude_gap(a: float, b: float) -> float:
    gap = abs(a - b) % 360.0
    return min(gap, 360.0 - gap)


def haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two coordinates given in degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance in meters between two points."""
    return haversine(a.lat, a.lng, b.lat, b.lng)


def distance_to_bounds(point: GeoPoint, bounds: GeoBounds) -> float:
    """Distance in meters from ``point`` to the nearest point of ``bounds`` (0 inside)."""
    return distance(point, bounds.nearest_point(point))


def bounding_box(center: GeoPoint, radius_meters: float) -> GeoBounds:
    """Box enclosing the circle of ``radius_meters`` around ``center``.

    The box over-approximates the circle and is meant as an index pre-filter.
    Longitudes are wrapped into [-180, 180], so a circle spanning the
    antimeridian yields ``min_lng > max_lng``. Circles reaching a pole span
    every longitude.
    """
    if radius_meters < 0 or not math.isfinite(radius_meters):
        raise ValidationError(f"Radius must be a non-negative number, got {radius_meters!r}")

    angular = radius_meters / EARTH_RADIUS_METERS
    delta_lat = math.degrees(angular)
    min_lat = center.lat - delta_lat
    max_lat = center.lat + delta_lat
    if min_lat <= -90.0 or max_lat >= 90.0 or angular >= math.pi / 2:
        return GeoBounds(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    ratio = math.sin(angular) / math.cos(math.radians(center.lat))
    if ratio >= 1.0:
        return GeoBounds(min_lat, max_lat, -180.0, 180.0)
    delta_lng = math.degrees(math.asin(ratio))

    min_lng = center.lng - delta_lng
    max_lng = center.lng + delta_lng
    if min_lng < -180.0:
        min_lng += 360.0
    if max_lng > 180.0:
        max_lng -= 360.0
    return GeoBounds(min_lat, max_lat, min_lng, max_lng)


def is_within_radius(point: GeoPoint, center: GeoPoint, radius_meters: float) -> bool:
    return distance(point, center) <= radius_meters


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None


def _point_or_none(lat: Any, lng: Any) -> GeoPoint | None:
    lat_f = _to_float(lat)
    lng_f = _to_float(lng)
    if lat_f is None or lng_f is None or not is_valid_coordinate(lat_f, lng_f):
        return None
    return GeoPoint(lat_f, lng_f)


def parse_point(value: Any) -> GeoPoint | None:
    """Parse ``{lat,lng}``, ``{latitude,longitude}``, ``[lat, lng]`` or ``"lat,lng"``.

    Returns None for anything else, including out-of-range coordinates. Never raises.
    """
    if isinstance(value, GeoPoint):
        return value
    if isinstance(value, Mapping):
        if "lat" in value and "lng" in value:
            return _point_or_none(value["lat"], value["lng"])
        if "latitude" in value and "longitude" in value:
            return _point_or_none(value["latitude"], value["longitude"])
        return None
    if isinstance(value, str):
        parts = value.split(",")
        if len(parts) != 2:
            return None
        return _point_or_none(parts[0], parts[1])
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)) and len(value) == 2:
        return _point_or_none(value[0], value[1])
    return None


def parse_bounds(value: Any) -> GeoBounds | None:
    """Parse a bounds mapping; returns None for malformed input. Never raises.

    Accepted keys: ``min_lat/max_lat/min_lng/max_lng``, ``minLat/maxLat/minLng/maxLng``
    or ``north/south/east/west``.
    """
    if isinstance(value, GeoBounds):
        return value
    if not isinstance(value, Mapping):
        return None
    for keys in (
        ("min_lat", "max_lat", "min_lng", "max_lng"),
        ("minLat", "maxLat", "minLng", "maxLng"),
        ("south", "north", "west", "east"),
    ):
        if all(key in value for key in keys):
            numbers = [_to_float(value[key]) for key in keys]
            if any(number is None for number in numbers):
                return None
            try:
                return GeoBounds(*numbers)  # type: ignore[arg-type]
            except ValidationError:
                return None
    return None


def normalize_unit(unit: str) -> str:
    try:
        return _UNIT_ALIASES[unit.strip().lower()]
    except (KeyError, AttributeError):
        raise ValidationError(f"Unknown distance unit: {unit!r}") from None


def to_meters(value: float, unit: str = "m") -> float:
    return float(value) * _METERS_PER_UNIT[normalize_unit(unit)]


def from_meters(meters: float, unit: str = "m") -> float:
    return float(meters) / _METERS_PER_UNIT[normalize_unit(unit)]


def km_to_meters(km: float) -> float:
    return km * METERS_PER_KILOMETER


def meters_to_km(meters: float) -> float:
    return meters / METERS_PER_KILOMETER


def miles_to_meters(miles: float) -> float:
    return miles * METERS_PER_MILE


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE


def format_distance(meters: float, unit: str = "metric", decimals: int = 1) -> str:
    """Human readable distance: ``m``/``km`` for metric, ``ft``/``mi`` for imperial."""
    if unit == "imperial":
        miles = meters_to_miles(meters)
        if miles < 0.1:
            return f"{round(meters * FEET_PER_METER)} ft"
        return f"{miles:,.{decimals}f} mi"
    if meters < METERS_PER_KILOMETER:
        return f"{round(meters)} m"
    return f"{meters_to_km(meters):,.{decimals}f} km"
