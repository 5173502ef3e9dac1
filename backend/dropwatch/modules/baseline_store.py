"""Per-corridor travel-time baselines.

Each corridor carries one baseline per UTC hour of day that has at least
MIN_SAMPLES_FOR_HOURLY traversals, plus a global baseline over all of its
traversals. Baselines are fully recomputed from the corridor's traversal
history whenever a traversal lands on it.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.base import GLOBAL_BUCKET
from dropwatch.models.corridor import Corridor
from dropwatch.models.corridor_baseline import CorridorBaseline
from dropwatch.models.traversal import Traversal
from dropwatch.modules.stats import hour_bucket, median, percentile

logger = logging.getLogger(__name__)


class TraversalSample(Protocol):
    travel_sec: float
    avg_speed_kmh: float
    start_ts: datetime


class BaselineLike(Protocol):
    bucket_hour: int
    count: int
    median_travel_sec: float
    p95_speed_kmh: float


@dataclass(frozen=True)
class BaselineStats:
    bucket_hour: int
    count: int
    median_travel_sec: float
    p95_speed_kmh: float


def _bucket_stats(bucket_hour: int, samples: Sequence[TraversalSample]) -> BaselineStats:
    return BaselineStats(
        bucket_hour=bucket_hour,
        count=len(samples),
        median_travel_sec=float(round(median([s.travel_sec for s in samples]))),
        p95_speed_kmh=percentile([s.avg_speed_kmh for s in samples], 95),
    )


def compute_baselines(
    traversals: Iterable[TraversalSample],
    min_samples: int | None = None,
) -> list[BaselineStats]:
    """Hourly baselines for qualifying hours, then the global baseline.

    Returns an empty list when there are no traversals. Output is ordered by
    hour with the global bucket last, so repeated calls on the same input
    are identical.
    """
    if min_samples is None:
        min_samples = settings.MIN_SAMPLES_FOR_HOURLY
    samples = list(traversals)
    if not samples:
        return []

    by_hour: dict[int, list[TraversalSample]] = defaultdict(list)
    for sample in samples:
        by_hour[hour_bucket(sample.start_ts)].append(sample)

    result = [
        _bucket_stats(hour, by_hour[hour])
        for hour in sorted(by_hour)
        if len(by_hour[hour]) >= min_samples
    ]
    result.append(_bucket_stats(GLOBAL_BUCKET, samples))
    return result


def get_applicable_baseline(baselines: Sequence[BaselineLike], timestamp: datetime) -> Optional[BaselineLike]:
    """Hourly baseline for the timestamp's UTC hour, else global, else None."""
    hour = hour_bucket(timestamp)
    global_baseline = None
    for baseline in baselines:
        if baseline.bucket_hour == hour:
            return baseline
        if baseline.bucket_hour == GLOBAL_BUCKET:
            global_baseline = baseline
    return global_baseline


def get_corridor_baselines(db: Session, corridor_id: int) -> list[CorridorBaseline]:
    return (
        db.query(CorridorBaseline)
        .filter(CorridorBaseline.corridor_id == corridor_id)
        .order_by(CorridorBaseline.bucket_hour)
        .all()
    )


def update_corridor_baselines(
    db: Session, corridor_id: int, min_samples: int | None = None
) -> list[CorridorBaseline]:
    """Recompute and upsert a corridor's baselines; drop buckets that no longer qualify.

    Uses flush, not commit; the caller holds the corridor lock and owns
    the transaction.
    """
    traversals = db.query(Traversal).filter(Traversal.corridor_id == corridor_id).all()
    computed = {b.bucket_hour: b for b in compute_baselines(traversals, min_samples)}
    existing = {b.bucket_hour: b for b in get_corridor_baselines(db, corridor_id)}

    for bucket_hour, row in existing.items():
        if bucket_hour not in computed:
            db.delete(row)

    for bucket_hour, stats in computed.items():
        row = existing.get(bucket_hour)
        if row is None:
            row = CorridorBaseline(corridor_id=corridor_id, bucket_hour=bucket_hour)
            db.add(row)
        row.count = stats.count
        row.median_travel_sec = stats.median_travel_sec
        row.p95_speed_kmh = stats.p95_speed_kmh

    db.flush()
    return get_corridor_baselines(db, corridor_id)


def recompute_all_baselines(db: Session, min_samples: int | None = None) -> dict:
    """Batch recompute for every corridor.

    Returns:
        ``{"corridors_processed": N, "baselines_written": M, "errors": E}``
    """
    from dropwatch.utils.keyed_lock import corridor_locks

    corridors = db.query(Corridor).all()
    processed = 0
    written = 0
    errors = 0

    for corridor in corridors:
        try:
            with corridor_locks.hold(corridor.key_str):
                rows = update_corridor_baselines(db, corridor.corridor_id, min_samples)
                db.commit()
        except Exception:
            db.rollback()
            logger.exception("Baseline recompute failed for corridor %d", corridor.corridor_id)
            errors += 1
            continue
        if rows:
            processed += 1
            written += len(rows)

    logger.info(
        "Baseline recompute: %d corridors processed, %d baselines written, %d errors",
        processed, written, errors,
    )
    return {"corridors_processed": processed, "baselines_written": written, "errors": errors}
