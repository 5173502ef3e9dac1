"""Corridor resolution for transit drops.

A corridor is identified by the H3 cell of the drop's start point, the H3
cell of its end point, and a 16-way direction bucket of the start→end
bearing. Two drops with the same key belong to the same corridor no matter
which trip produced them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import h3
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.base import DropReasonEnum
from dropwatch.models.corridor import Corridor
from dropwatch.modules.drop_detector import GapEvent
from dropwatch.utils.geo import direction_bucket, haversine_meters, initial_bearing_deg, is_valid_coordinate

logger = logging.getLogger(__name__)


class CoordinateValidationError(ValueError):
    """Raised when a gap endpoint lies outside WGS-84 bounds."""


@dataclass(frozen=True)
class CorridorKey:
    a_cell: str
    b_cell: str
    direction: int

    def __str__(self) -> str:
        return f"{self.a_cell}:{self.b_cell}:{self.direction}"


@dataclass(frozen=True)
class TraversalCandidate:
    key: CorridorKey
    start_ts: datetime
    end_ts: datetime
    travel_sec: float
    avg_speed_kmh: float
    distance_m: float
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float


def check_endpoints(start_lat: float, start_lon: float, end_lat: float, end_lon: float) -> None:
    for lat, lon in ((start_lat, start_lon), (end_lat, end_lon)):
        if not is_valid_coordinate(lat, lon):
            raise CoordinateValidationError(f"Coordinate out of range: lat={lat}, lon={lon}")


def corridor_key_for(
    start_lat: float, start_lon: float, end_lat: float, end_lon: float, resolution: int
) -> CorridorKey:
    check_endpoints(start_lat, start_lon, end_lat, end_lon)
    a_cell = h3.latlng_to_cell(start_lat, start_lon, resolution)
    b_cell = h3.latlng_to_cell(end_lat, end_lon, resolution)
    bearing = initial_bearing_deg(start_lat, start_lon, end_lat, end_lon)
    return CorridorKey(a_cell=a_cell, b_cell=b_cell, direction=direction_bucket(bearing))


def resolve_traversal(
    gap: GapEvent,
    resolution: int | None = None,
    min_distance_m: float | None = None,
    max_speed_kmh: float | None = None,
) -> Optional[TraversalCandidate]:
    """Map a gap event to a corridor traversal, or None when it does not qualify.

    Only transit gaps resolve. Self-loops, sub-threshold movement and
    implausible speeds are quality rejections, not errors. Out-of-range
    coordinates raise CoordinateValidationError whatever the gap's class.
    """
    if resolution is None:
        resolution = settings.H3_RESOLUTION
    if min_distance_m is None:
        min_distance_m = settings.MIN_TRAVERSAL_DISTANCE_M
    if max_speed_kmh is None:
        max_speed_kmh = settings.MAX_TRAVERSAL_SPEED_KMH

    check_endpoints(gap.start_lat, gap.start_lon, gap.end_lat, gap.end_lon)
    if gap.reason != DropReasonEnum.TRANSIT:
        return None

    key = corridor_key_for(gap.start_lat, gap.start_lon, gap.end_lat, gap.end_lon, resolution)
    if key.a_cell == key.b_cell:
        logger.debug("Discarded self-loop corridor at %s", key.a_cell)
        return None

    distance_m = haversine_meters(gap.start_lat, gap.start_lon, gap.end_lat, gap.end_lon)
    if distance_m < min_distance_m:
        logger.debug("Discarded gap at %s: %.1fm movement is jitter", gap.start_ts, distance_m)
        return None

    avg_speed_kmh = (distance_m / 1000.0) / (gap.duration_sec / 3600.0) if gap.duration_sec > 0 else 0.0
    if avg_speed_kmh > max_speed_kmh:
        logger.debug("Discarded gap at %s: implausible %.1f km/h", gap.start_ts, avg_speed_kmh)
        return None

    return TraversalCandidate(
        key=key,
        start_ts=gap.start_ts,
        end_ts=gap.end_ts,
        travel_sec=gap.duration_sec,
        avg_speed_kmh=avg_speed_kmh,
        distance_m=distance_m,
        start_lat=gap.start_lat,
        start_lon=gap.start_lon,
        end_lat=gap.end_lat,
        end_lon=gap.end_lon,
    )


def find_corridor(db: Session, key: CorridorKey) -> Corridor | None:
    return (
        db.query(Corridor)
        .filter(
            Corridor.a_cell == key.a_cell,
            Corridor.b_cell == key.b_cell,
            Corridor.direction == key.direction,
        )
        .first()
    )


def get_or_create_corridor(db: Session, key: CorridorKey) -> Corridor:
    """Find the corridor for key, inserting it on first observation.

    A concurrent insert of the same key (another process) surfaces as
    IntegrityError on the uniqueness constraint; the transaction is rolled
    back and the winner's row is read. Call this before any other pending
    work in the transaction.
    """
    corridor = find_corridor(db, key)
    if corridor is not None:
        return corridor
    corridor = Corridor(a_cell=key.a_cell, b_cell=key.b_cell, direction=key.direction)
    try:
        db.add(corridor)
        db.flush()
    except IntegrityError:
        db.rollback()
        corridor = find_corridor(db, key)
        if corridor is None:
            raise
        return corridor
    logger.info("New corridor %s (id=%d)", key, corridor.corridor_id)
    return corridor
