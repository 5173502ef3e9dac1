"""Corridor listing with learned baselines and live deviation."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from dropwatch.models.base import GLOBAL_BUCKET
from dropwatch.models.corridor import Corridor
from dropwatch.models.traversal import Traversal
from dropwatch.modules.baseline_store import get_applicable_baseline, get_corridor_baselines

SORT_KEYS = ("count", "deviation", "median")


def format_duration(seconds: float) -> str:
    """Human-readable duration: 45s, 5m 30s, 2h, 2h 5m."""
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, rem_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rem_seconds}s" if rem_seconds else f"{minutes}m"
    hours, rem_minutes = divmod(minutes, 60)
    return f"{hours}h {rem_minutes}m" if rem_minutes else f"{hours}h"


def list_corridors(
    db: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort: str = "count",
    limit: int = 100,
) -> dict:
    """Corridors with traversals in the window, sorted by count, |deviation| or median."""
    if sort not in SORT_KEYS:
        raise ValueError(f"sort must be one of {SORT_KEYS}, got {sort!r}")

    window = []
    if date_from:
        window.append(Traversal.start_ts >= date_from)
    if date_to:
        window.append(Traversal.start_ts <= date_to)

    counts = dict(
        db.query(Traversal.corridor_id, func.count(Traversal.traversal_id))
        .filter(*window)
        .group_by(Traversal.corridor_id)
        .all()
    )
    if not counts:
        return {"corridors": [], "total": 0}

    corridors = db.query(Corridor).filter(Corridor.corridor_id.in_(list(counts))).all()
    rows = []
    for corridor in corridors:
        baselines = get_corridor_baselines(db, corridor.corridor_id)
        global_stats = next((b for b in baselines if b.bucket_hour == GLOBAL_BUCKET), None)
        last = (
            db.query(Traversal)
            .filter(Traversal.corridor_id == corridor.corridor_id, *window)
            .order_by(Traversal.start_ts.desc())
            .first()
        )
        deviation = 0.0
        if global_stats and last:
            applicable = get_applicable_baseline(baselines, last.start_ts)
            if applicable:
                deviation = last.travel_sec - applicable.median_travel_sec

        rows.append({
            "corridor_id": corridor.corridor_id,
            "a_cell": corridor.a_cell,
            "b_cell": corridor.b_cell,
            "direction": corridor.direction,
            "count": counts[corridor.corridor_id],
            "median_sec": global_stats.median_travel_sec if global_stats else 0.0,
            "p95_speed_kmh": global_stats.p95_speed_kmh if global_stats else 0.0,
            "last_seen": last.start_ts if last else None,
            "deviation_sec": deviation,
            "deviation_formatted": format_duration(abs(deviation)) if deviation else None,
            "deviation_sign": "+" if deviation > 0 else "-" if deviation < 0 else "",
        })

    if sort == "deviation":
        rows.sort(key=lambda r: abs(r["deviation_sec"]), reverse=True)
    elif sort == "median":
        rows.sort(key=lambda r: r["median_sec"], reverse=True)
    else:
        rows.sort(key=lambda r: r["count"], reverse=True)

    return {"corridors": rows[:limit], "total": len(rows)}
