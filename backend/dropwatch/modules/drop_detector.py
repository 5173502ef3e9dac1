"""Positioning drop detection.

A drop is the interval between two consecutive fixes of a trip whose time
delta exceeds tau_short. Each drop is classified:

  micro     tau_short < gap <= tau_short × MICRO_DROP_FACTOR
            counted toward instability only, never learned as a corridor
  transit   normal in-motion gap, feeds corridor learning
  extended  gap > EXTENDED_GAP_SECONDS, vehicle inactivity
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.base import DropReasonEnum
from dropwatch.models.drop import Drop

logger = logging.getLogger(__name__)

# Gaps at or above this are ignored when estimating the sampling cadence
_MODAL_GAP_CEILING_SECONDS = 300
_DEFAULT_MODAL_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class FixPoint:
    """Minimal positional sample consumed by the detector."""
    ts: datetime
    lat: float
    lon: float
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None


@dataclass(frozen=True)
class GapEvent:
    start_ts: datetime
    end_ts: datetime
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    duration_sec: float
    reason: DropReasonEnum


def classify_gap(
    gap_sec: float,
    tau_short: float,
    micro_factor: float | None = None,
    extended_sec: float | None = None,
) -> DropReasonEnum:
    """Classify a gap already known to exceed tau_short."""
    if micro_factor is None:
        micro_factor = settings.MICRO_DROP_FACTOR
    if extended_sec is None:
        extended_sec = settings.EXTENDED_GAP_SECONDS
    if gap_sec > extended_sec:
        return DropReasonEnum.EXTENDED
    if gap_sec <= tau_short * micro_factor:
        return DropReasonEnum.MICRO
    return DropReasonEnum.TRANSIT


def modal_interval(fixes: Sequence[FixPoint]) -> float:
    """Typical sampling cadence of a trip: middle value of sub-5-minute gaps.

    Diagnostic only. Classification keys off the fixed thresholds.
    """
    ordered = sorted(fixes, key=lambda f: f.ts)
    gaps = []
    for prev, curr in zip(ordered, ordered[1:]):
        gap = (curr.ts - prev.ts).total_seconds()
        if 0 < gap < _MODAL_GAP_CEILING_SECONDS:
            gaps.append(gap)
    if not gaps:
        return _DEFAULT_MODAL_INTERVAL_SECONDS
    gaps.sort()
    return gaps[len(gaps) // 2]


def detect_drops(
    fixes: Sequence[FixPoint],
    tau_short: float | None = None,
    micro_factor: float | None = None,
    extended_sec: float | None = None,
) -> list[GapEvent]:
    """Return the ordered gap events for one trip's fixes.

    Fewer than two fixes yields no events. Input is sorted by timestamp
    before scanning.
    """
    if tau_short is None:
        tau_short = settings.TAU_SHORT_SECONDS
    if len(fixes) < 2:
        return []

    ordered = sorted(fixes, key=lambda f: f.ts)
    cadence = modal_interval(ordered)
    # Candidate adaptive cutoff, logged but not applied
    adaptive_threshold = max(tau_short, cadence * 2)
    logger.debug(
        "Drop scan: %d fixes, modal interval %.1fs, adaptive candidate %.1fs, tau_short %.1fs",
        len(ordered), cadence, adaptive_threshold, tau_short,
    )

    events: list[GapEvent] = []
    for prev, curr in zip(ordered, ordered[1:]):
        gap_sec = (curr.ts - prev.ts).total_seconds()
        if gap_sec <= tau_short:
            continue
        events.append(GapEvent(
            start_ts=prev.ts,
            end_ts=curr.ts,
            start_lat=prev.lat,
            start_lon=prev.lon,
            end_lat=curr.lat,
            end_lon=curr.lon,
            duration_sec=gap_sec,
            reason=classify_gap(gap_sec, tau_short, micro_factor, extended_sec),
        ))
    return events


def persist_drops(db: Session, trip_id: int, events: Sequence[GapEvent]) -> int:
    """Store drops not yet recorded for this trip. Returns count of new rows.

    Uses flush, not commit; the caller owns the transaction.
    """
    if not events:
        return 0
    starts = [e.start_ts for e in events]
    existing = {
        row[0]
        for row in db.query(Drop.start_ts)
        .filter(Drop.trip_id == trip_id, Drop.start_ts.in_(starts))
        .all()
    }
    created = 0
    for event in events:
        if event.start_ts in existing:
            continue
        db.add(Drop(
            trip_id=trip_id,
            start_ts=event.start_ts,
            end_ts=event.end_ts,
            start_lat=event.start_lat,
            start_lon=event.start_lon,
            end_lat=event.end_lat,
            end_lon=event.end_lon,
            duration_sec=event.duration_sec,
            reason=event.reason,
        ))
        existing.add(event.start_ts)
        created += 1
    db.flush()
    return created


def retire_superseded_drops(
    db: Session, trip_id: int, events: Sequence[GapEvent], window_start: datetime, window_end: datetime
) -> int:
    """Delete stored drops in [window_start, window_end] that a rescan no longer yields.

    A late fix landing inside a recorded gap splits it; the wider drop is
    removed so persist_drops can store the two halves. The window must be
    the full span the events were detected over. Uses flush, not commit.
    """
    current = {(e.start_ts, e.end_ts) for e in events}
    stale = [
        drop
        for drop in db.query(Drop)
        .filter(Drop.trip_id == trip_id, Drop.start_ts >= window_start, Drop.end_ts <= window_end)
        .all()
        if (drop.start_ts, drop.end_ts) not in current
    ]
    for drop in stale:
        logger.info("Retiring superseded drop %s → %s on trip %d", drop.start_ts, drop.end_ts, trip_id)
        db.delete(drop)
    db.flush()
    return len(stale)
