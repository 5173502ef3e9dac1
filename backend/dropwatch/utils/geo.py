"""Shared geodesic helpers.

Canonical implementations of haversine distance and bearing used by the
corridor resolver and the instability heatmap.
"""
from __future__ import annotations

import math

_EARTH_RADIUS_M: float = 6_371_000.0  # Earth mean radius in metres

DIRECTION_BUCKETS = 16
_BUCKET_WIDTH_DEG = 360.0 / DIRECTION_BUCKETS  # 22.5°


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres between two WGS-84 coordinates."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    )
    return _EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, normalized to [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlam = math.radians(lon2 - lon1)
    y = math.sin(dlam) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlam)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def direction_bucket(bearing_deg: float) -> int:
    """Bucket a bearing into one of 16 sectors of 22.5° (0 = north-ish)."""
    normalized = (bearing_deg + 360.0) % 360.0
    return int(normalized // _BUCKET_WIDTH_DEG) % DIRECTION_BUCKETS


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """True when lat/lon are finite and inside WGS-84 bounds."""
    if lat is None or lon is None:
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
