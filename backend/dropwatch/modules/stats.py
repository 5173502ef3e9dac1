"""Statistics primitives for corridor baselines."""
from __future__ import annotations

import math
import statistics
from datetime import datetime, timezone


def median(values: list[float]) -> float:
    """Median of values; 0.0 for an empty sample."""
    if not values:
        return 0.0
    return float(statistics.median(values))


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile (pct in 0-100); 0.0 for an empty sample."""
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    index = math.ceil((pct / 100.0) * len(sorted_vals)) - 1
    return float(sorted_vals[max(0, index)])


def hour_bucket(ts: datetime) -> int:
    """UTC hour of day (0-23). Naive timestamps are taken as UTC."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.hour
