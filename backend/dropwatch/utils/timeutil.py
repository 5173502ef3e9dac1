"""Timestamp normalization helpers.

Timestamps are stored as naive UTC. Aware inputs are converted, naive
inputs are assumed to already be UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone


def to_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
