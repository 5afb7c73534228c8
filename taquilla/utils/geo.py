"""Great-circle distance helpers."""

import math
from dataclasses import dataclass

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float


def haversine_meters(a: Location, b: Location) -> float:
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))
