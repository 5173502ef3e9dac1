"""Positioning instability per spatial cell.

Every drop is attributed to the cells of both of its endpoints: micro drops
count as short drops, transit and extended drops as long drops. Traversals
through a cell dilute its score:

    instability = (w_short × short + w_long × long) / max(1, traversals)
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

import h3
from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.base import DropReasonEnum
from dropwatch.models.drop import Drop
from dropwatch.models.traversal import Traversal

logger = logging.getLogger(__name__)


def instability_score(
    short_drops: int,
    long_drops: int,
    traversals: int,
    w_short: float | None = None,
    w_long: float | None = None,
) -> float:
    if w_short is None:
        w_short = settings.INSTABILITY_WEIGHT_SHORT
    if w_long is None:
        w_long = settings.INSTABILITY_WEIGHT_LONG
    if traversals == 0:
        return 0.0
    return (w_short * short_drops + w_long * long_drops) / max(1, traversals)


def _cell_polygon(cell: str) -> list[list[list[float]]]:
    """Closed GeoJSON ring ([lon, lat] order) for an H3 cell."""
    ring = [[lon, lat] for lat, lon in h3.cell_to_boundary(cell)]
    ring.append(ring[0])
    return [ring]


def compute_hex_instability(
    db: Session,
    resolution: int | None = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    """GeoJSON FeatureCollection of cells with drop/traversal counts and instability."""
    if resolution is None:
        resolution = settings.H3_RESOLUTION

    drop_q = db.query(Drop)
    trav_q = db.query(Traversal)
    if date_from:
        drop_q = drop_q.filter(Drop.start_ts >= date_from)
        trav_q = trav_q.filter(Traversal.start_ts >= date_from)
    if date_to:
        drop_q = drop_q.filter(Drop.start_ts <= date_to)
        trav_q = trav_q.filter(Traversal.start_ts <= date_to)

    stats: dict[str, dict[str, int]] = defaultdict(lambda: {"shortDrops": 0, "longDrops": 0, "traversals": 0})

    for drop in drop_q.all():
        bucket = "shortDrops" if drop.reason == DropReasonEnum.MICRO else "longDrops"
        for lat, lon in ((drop.start_lat, drop.start_lon), (drop.end_lat, drop.end_lon)):
            stats[h3.latlng_to_cell(lat, lon, resolution)][bucket] += 1

    for trav in trav_q.all():
        for lat, lon in ((trav.start_lat, trav.start_lon), (trav.end_lat, trav.end_lon)):
            stats[h3.latlng_to_cell(lat, lon, resolution)]["traversals"] += 1

    features = []
    for cell, counts in stats.items():
        features.append({
            "type": "Feature",
            "geometry": {"type": "Polygon", "coordinates": _cell_polygon(cell)},
            "properties": {
                "hex": cell,
                "instability": instability_score(counts["shortDrops"], counts["longDrops"], counts["traversals"]),
                **counts,
            },
        })

    logger.debug("Instability heatmap: %d cells at resolution %d", len(features), resolution)
    return {"type": "FeatureCollection", "features": features}
