"""Fix batch ingestion and pipeline coordination.

Validates a batch of normalized fixes, groups them by vehicle, segments each
vehicle's fixes into trips and drives drop detection → corridor resolution →
baseline update → alert evaluation for every trip touched by the batch.

Vehicles are processed in parallel lanes (one worker per vehicle, each with
its own session). Writes to a corridor are serialized by the corridor lock,
and the per-traversal read-modify-write is retried on storage conflicts.
A failure in one trip or vehicle is logged and reported, never fatal to the
rest of the batch.
"""
from __future__ import annotations

import io
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Sequence

import polars as pl
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.alert import Alert
from dropwatch.models.corridor import Corridor
from dropwatch.models.drop import Drop
from dropwatch.models.gps_fix import GPSFix
from dropwatch.models.traversal import Traversal
from dropwatch.models.trip import Trip
from dropwatch.models.vehicle import Vehicle
from dropwatch.modules.alert_engine import evaluate_traversal, publish_alerts, to_alert_message
from dropwatch.modules.alert_fanout import AlertPublisher
from dropwatch.modules.baseline_store import update_corridor_baselines
from dropwatch.modules.corridor_resolver import (
    CoordinateValidationError,
    TraversalCandidate,
    get_or_create_corridor,
    resolve_traversal,
)
from dropwatch.modules.drop_detector import FixPoint, GapEvent, detect_drops, persist_drops, retire_superseded_drops
from dropwatch.schemas.alerts import AlertMessage
from dropwatch.schemas.fix import FixIn
from dropwatch.utils.keyed_lock import corridor_locks, vehicle_locks
from dropwatch.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"vehicle_id", "ts", "lat", "lon"}
_OPTIONAL_COLUMNS = ("speed", "accuracy", "heading")

_fix_batch_adapter = TypeAdapter(list[FixIn])


class FixValidationError(ValueError):
    """A fix in the batch is malformed; the whole batch is rejected."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class TransientStoreError(RuntimeError):
    """Retries of a traversal's read-modify-write were exhausted.

    The traversal can be redelivered; its idempotency key prevents a
    double count.
    """

    def __init__(self, idempotency_key: tuple, attempts: int):
        super().__init__(f"Store conflict not resolved after {attempts} attempts for {idempotency_key}")
        self.idempotency_key = idempotency_key
        self.attempts = attempts


@dataclass(frozen=True)
class PipelineConfig:
    """Pipeline parameters, captured once per batch."""
    tau_short: float
    micro_factor: float
    extended_sec: float
    trip_gap_minutes: float
    h3_resolution: int
    min_distance_m: float
    max_speed_kmh: float
    min_samples: int
    delay_threshold_minutes: float
    max_retries: int
    max_workers: int

    @classmethod
    def from_settings(cls, **overrides: Any) -> "PipelineConfig":
        values = dict(
            tau_short=settings.TAU_SHORT_SECONDS,
            micro_factor=settings.MICRO_DROP_FACTOR,
            extended_sec=settings.EXTENDED_GAP_SECONDS,
            trip_gap_minutes=settings.TRIP_GAP_MINUTES,
            h3_resolution=settings.H3_RESOLUTION,
            min_distance_m=settings.MIN_TRAVERSAL_DISTANCE_M,
            max_speed_kmh=settings.MAX_TRAVERSAL_SPEED_KMH,
            min_samples=settings.MIN_SAMPLES_FOR_HOURLY,
            delay_threshold_minutes=settings.DELAY_THRESHOLD_MINUTES,
            max_retries=settings.STORE_MAX_RETRIES,
            max_workers=settings.INGEST_MAX_WORKERS,
        )
        values.update(overrides)
        return cls(**values)


# ── Validation and grouping ───────────────────────────────────────────────────

def validate_fix_batch(raw: Any) -> list[FixIn]:
    """Validate every fix; any bad fix rejects the batch before state is touched."""
    if isinstance(raw, (dict, FixIn)):
        raw = [raw]
    if not raw:
        raise FixValidationError("No fixes provided")
    try:
        return _fix_batch_adapter.validate_python(list(raw))
    except ValidationError as exc:
        logger.warning("Rejected fix batch: %d validation errors", exc.error_count())
        raise FixValidationError(
            f"Invalid fix batch: {exc.error_count()} validation errors",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


def group_by_vehicle(fixes: Iterable[FixIn]) -> "OrderedDict[str, list[FixIn]]":
    grouped: OrderedDict[str, list[FixIn]] = OrderedDict()
    for fix in fixes:
        grouped.setdefault(fix.vehicle_id, []).append(fix)
    return grouped


def segment_trips(fixes: Sequence[FixIn], gap_minutes: float) -> list[list[FixIn]]:
    """Split one vehicle's fixes into runs with no gap above gap_minutes."""
    ordered = sorted(fixes, key=lambda f: f.ts)
    segments: list[list[FixIn]] = []
    current: list[FixIn] = []
    max_gap_sec = gap_minutes * 60
    for fix in ordered:
        if current and (fix.ts - current[-1].ts).total_seconds() > max_gap_sec:
            segments.append(current)
            current = []
        current.append(fix)
    if current:
        segments.append(current)
    return segments


def load_fixes_csv(source: Any) -> list[dict]:
    """Read a normalized fix CSV into raw fix dicts (validated later by ingest).

    Expected columns: vehicle_id, ts, lat, lon and optionally speed,
    accuracy, heading. Every column is read as text so identifiers keep
    leading zeros; FixIn does the type coercion.
    """
    raw: Any = source.read() if hasattr(source, "read") else source
    if isinstance(raw, bytes) and raw[:3] == b"\xef\xbb\xbf":
        raw = raw[3:]
    if isinstance(raw, bytes):
        raw = io.BytesIO(raw)

    df = pl.read_csv(raw, infer_schema_length=0)
    df = df.rename({col: col.lstrip("\ufeff").lower().strip() for col in df.columns})
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"CSV missing required columns: {sorted(missing)}")

    keep = [c for c in ("vehicle_id", "ts", "lat", "lon", *_OPTIONAL_COLUMNS) if c in df.columns]
    rows = []
    for row in df.select(keep).iter_rows(named=True):
        rows.append({k: v for k, v in row.items() if v not in (None, "")})
    return rows


# ── Persistence of fixes and trips ────────────────────────────────────────────

def _get_or_create_vehicle(db: Session, name: str) -> Vehicle:
    vehicle = db.query(Vehicle).filter(Vehicle.name == name).first()
    if vehicle:
        return vehicle
    vehicle = Vehicle(name=name)
    try:
        db.add(vehicle)
        db.flush()
    except IntegrityError:
        db.rollback()
        vehicle = db.query(Vehicle).filter(Vehicle.name == name).first()
        if not vehicle:
            raise
    return vehicle


def _find_open_trips(db: Session, vehicle_id: int, start: datetime, end: datetime, gap: timedelta) -> list[Trip]:
    """Trips of this vehicle whose span lies within the inactivity gap of [start, end], earliest first."""
    return (
        db.query(Trip)
        .filter(
            Trip.vehicle_id == vehicle_id,
            Trip.start_time <= end + gap,
            Trip.end_time >= start - gap,
        )
        .order_by(Trip.start_time.asc(), Trip.trip_id.asc())
        .all()
    )


def _merge_trips(db: Session, survivor: Trip, absorbed: Sequence[Trip]) -> None:
    """Fold trips bridged by a late segment into the earliest one.

    Fixes, drops, traversals and alerts move to the survivor. Where both
    trips hold an open alert for the same corridor and type, the absorbed
    trip's alert is resolved so one open alert remains.
    """
    ids = [t.trip_id for t in absorbed]
    open_keys = {
        (a.corridor_id, a.alert_type)
        for a in db.query(Alert).filter(Alert.trip_id == survivor.trip_id, Alert.resolved_utc.is_(None)).all()
    }
    now = utcnow()
    for alert in db.query(Alert).filter(Alert.trip_id.in_(ids)).order_by(Alert.alert_id).all():
        key = (alert.corridor_id, alert.alert_type)
        if alert.resolved_utc is None:
            if key in open_keys:
                alert.resolved_utc = now
            else:
                open_keys.add(key)
        alert.trip_id = survivor.trip_id
    db.flush()

    for model in (GPSFix, Drop, Traversal):
        db.query(model).filter(model.trip_id.in_(ids)).update({model.trip_id: survivor.trip_id})
    for trip in absorbed:
        survivor.start_time = min(survivor.start_time, trip.start_time)
        survivor.end_time = max(survivor.end_time, trip.end_time)
        db.expire(trip, ["fixes"])
        db.delete(trip)
    db.flush()
    logger.info("Merged trips %s into trip %d", ids, survivor.trip_id)


def _store_segment(db: Session, vehicle: Vehicle, segment: Sequence[FixIn], cfg: PipelineConfig) -> tuple[Trip, int]:
    """Attach a segment's fixes to its trip and extend the trip's span.

    A segment bridging two or more stored trips merges them into one.
    Fixes, merges and the span update commit together.
    """
    start, end = segment[0].ts, segment[-1].ts
    trips = _find_open_trips(db, vehicle.vehicle_id, start, end, timedelta(minutes=cfg.trip_gap_minutes))
    if not trips:
        trip = Trip(vehicle_id=vehicle.vehicle_id, start_time=start, end_time=end, source="api_ingest")
        db.add(trip)
        db.flush()
    else:
        trip = trips[0]
        if len(trips) > 1:
            _merge_trips(db, trip, trips[1:])
        trip.start_time = min(trip.start_time, start)
        trip.end_time = max(trip.end_time, end)

    existing = {
        row[0]
        for row in db.query(GPSFix.timestamp_utc)
        .filter(GPSFix.trip_id == trip.trip_id, GPSFix.timestamp_utc >= start, GPSFix.timestamp_utc <= end)
        .all()
    }
    inserted = 0
    for fix in segment:
        if fix.ts in existing:
            continue
        db.add(GPSFix(
            trip_id=trip.trip_id,
            timestamp_utc=fix.ts,
            lat=fix.lat,
            lon=fix.lon,
            speed=fix.speed,
            accuracy=fix.accuracy,
            heading=fix.heading,
        ))
        existing.add(fix.ts)
        inserted += 1
    db.commit()
    return trip, inserted


def _window_fixes(db: Session, trip_id: int, start: datetime, end: datetime) -> list[FixPoint]:
    """The trip's fixes in [start, end] plus the neighbouring fix on each side."""
    before = (
        db.query(GPSFix.timestamp_utc)
        .filter(GPSFix.trip_id == trip_id, GPSFix.timestamp_utc < start)
        .order_by(GPSFix.timestamp_utc.desc())
        .first()
    )
    after = (
        db.query(GPSFix.timestamp_utc)
        .filter(GPSFix.trip_id == trip_id, GPSFix.timestamp_utc > end)
        .order_by(GPSFix.timestamp_utc.asc())
        .first()
    )
    lo = before[0] if before else start
    hi = after[0] if after else end
    rows = (
        db.query(GPSFix)
        .filter(GPSFix.trip_id == trip_id, GPSFix.timestamp_utc >= lo, GPSFix.timestamp_utc <= hi)
        .order_by(GPSFix.timestamp_utc)
        .all()
    )
    return [
        FixPoint(ts=r.timestamp_utc, lat=r.lat, lon=r.lon, speed=r.speed, accuracy=r.accuracy, heading=r.heading)
        for r in rows
    ]


# ── Per-corridor critical section ─────────────────────────────────────────────

def record_traversal(
    db: Session,
    candidate: TraversalCandidate,
    trip_id: int,
    vehicle_id: int,
    cfg: PipelineConfig,
) -> Optional[list[AlertMessage]]:
    """Store a traversal, recompute its corridor's baselines and evaluate alerts.

    Runs under the corridor lock and commits before releasing it. Returns the
    alert messages to publish, or None when the traversal was already
    recorded (idempotent redelivery). Raises TransientStoreError when storage
    conflicts persist past cfg.max_retries attempts.
    """
    key = str(candidate.key)
    identity = (key, trip_id, candidate.start_ts.isoformat())
    attempts = max(1, cfg.max_retries)

    for attempt in range(1, attempts + 1):
        with corridor_locks.hold(key):
            try:
                corridor = get_or_create_corridor(db, candidate.key)
                duplicate = (
                    db.query(Traversal.traversal_id)
                    .filter(
                        Traversal.corridor_id == corridor.corridor_id,
                        Traversal.trip_id == trip_id,
                        Traversal.start_ts == candidate.start_ts,
                    )
                    .first()
                )
                if duplicate is not None:
                    db.commit()
                    logger.debug("Traversal %s already recorded, skipped", identity)
                    return None

                traversal = Traversal(
                    corridor_id=corridor.corridor_id,
                    trip_id=trip_id,
                    start_ts=candidate.start_ts,
                    end_ts=candidate.end_ts,
                    travel_sec=candidate.travel_sec,
                    avg_speed_kmh=candidate.avg_speed_kmh,
                    start_lat=candidate.start_lat,
                    start_lon=candidate.start_lon,
                    end_lat=candidate.end_lat,
                    end_lon=candidate.end_lon,
                )
                db.add(traversal)
                db.flush()

                update_corridor_baselines(db, corridor.corridor_id, cfg.min_samples)
                alerts = evaluate_traversal(db, traversal, trip_id, vehicle_id, cfg.delay_threshold_minutes)
                messages = [to_alert_message(a) for a in alerts]
                db.commit()
                return messages
            except (IntegrityError, OperationalError) as exc:
                db.rollback()
                logger.warning(
                    "Store conflict on traversal %s (attempt %d/%d): %s",
                    identity, attempt, attempts, exc.__class__.__name__,
                )

    raise TransientStoreError(identity, attempts)


def retire_superseded_traversals(
    db: Session,
    trip_id: int,
    events: Sequence[GapEvent],
    window_start: datetime,
    window_end: datetime,
    cfg: PipelineConfig,
) -> int:
    """Remove traversals in the window whose gap was split by a late fix.

    Each affected corridor loses the traversals and has its baselines
    recomputed under its lock. Alerts already raised for a retired
    traversal stay as history. Returns the number of traversals removed.
    """
    current = {(e.start_ts, e.end_ts) for e in events}
    stale = [
        t
        for t in db.query(Traversal)
        .filter(Traversal.trip_id == trip_id, Traversal.start_ts >= window_start, Traversal.end_ts <= window_end)
        .all()
        if (t.start_ts, t.end_ts) not in current
    ]
    by_corridor: dict[int, list[int]] = {}
    for traversal in stale:
        by_corridor.setdefault(traversal.corridor_id, []).append(traversal.traversal_id)

    for corridor_id, traversal_ids in by_corridor.items():
        corridor = db.get(Corridor, corridor_id)
        with corridor_locks.hold(corridor.key_str):
            db.query(Traversal).filter(Traversal.traversal_id.in_(traversal_ids)).delete(synchronize_session="fetch")
            update_corridor_baselines(db, corridor_id, cfg.min_samples)
            db.commit()
        logger.info(
            "Retired %d superseded traversal(s) on corridor %d for trip %d",
            len(traversal_ids), corridor_id, trip_id,
        )
    return len(stale)


# ── Trip and vehicle lanes ────────────────────────────────────────────────────

def _process_segment(
    db: Session,
    vehicle: Vehicle,
    segment: Sequence[FixIn],
    cfg: PipelineConfig,
    publisher: Optional[AlertPublisher],
) -> dict:
    trip, inserted = _store_segment(db, vehicle, segment, cfg)
    trip_id = trip.trip_id
    vehicle_id = vehicle.vehicle_id

    fixes = _window_fixes(db, trip_id, segment[0].ts, segment[-1].ts)
    events = detect_drops(fixes, cfg.tau_short, cfg.micro_factor, cfg.extended_sec)
    if fixes:
        retire_superseded_drops(db, trip_id, events, fixes[0].ts, fixes[-1].ts)
    persist_drops(db, trip_id, events)
    db.commit()
    if fixes:
        retire_superseded_traversals(db, trip_id, events, fixes[0].ts, fixes[-1].ts, cfg)

    traversals_recorded = 0
    alerts_created = 0
    for event in events:
        try:
            candidate = resolve_traversal(event, cfg.h3_resolution, cfg.min_distance_m, cfg.max_speed_kmh)
        except CoordinateValidationError as exc:
            logger.warning("Rejected gap at %s on trip %d: %s", event.start_ts, trip_id, exc)
            continue
        if candidate is None:
            continue
        messages = record_traversal(db, candidate, trip_id, vehicle_id, cfg)
        if messages is None:
            continue
        traversals_recorded += 1
        alerts_created += publish_alerts(messages, publisher)

    logger.debug(
        "Trip %d: %d fixes (%d new), %d drops, %d traversals, %d alerts",
        trip_id, len(segment), inserted, len(events), traversals_recorded, alerts_created,
    )
    return {
        "trip_id": trip_id,
        "vehicle": vehicle.name,
        "points_processed": len(segment),
        "drops_detected": len(events),
        "traversals_recorded": traversals_recorded,
        "alerts_created": alerts_created,
    }


def _process_vehicle(
    session_factory: Callable[[], Session],
    vehicle_name: str,
    fixes: Sequence[FixIn],
    cfg: PipelineConfig,
    publisher: Optional[AlertPublisher],
) -> tuple[list[dict], list[str]]:
    results: list[dict] = []
    errors: list[str] = []
    with vehicle_locks.hold(vehicle_name):
        db = session_factory()
        try:
            for segment in segment_trips(fixes, cfg.trip_gap_minutes):
                try:
                    vehicle = _get_or_create_vehicle(db, vehicle_name)
                    results.append(_process_segment(db, vehicle, segment, cfg, publisher))
                except Exception as exc:
                    db.rollback()
                    logger.exception(
                        "Trip processing failed for vehicle %s (segment starting %s)",
                        vehicle_name, segment[0].ts,
                    )
                    errors.append(f"vehicle {vehicle_name} @ {segment[0].ts.isoformat()}: {exc}")
        finally:
            db.close()
    return results, errors


def ingest_fix_batch(
    raw: Any,
    session_factory: Optional[Callable[[], Session]] = None,
    publisher: Optional[AlertPublisher] = None,
    config: Optional[PipelineConfig] = None,
) -> dict[str, Any]:
    """
    Ingest a batch of normalized fixes and run the corridor pipeline.

    Returns a summary dict with per-trip results and any per-trip errors.
    Raises FixValidationError (no state touched) if any fix is malformed.
    """
    cfg = config or PipelineConfig.from_settings()
    fixes = validate_fix_batch(raw)
    by_vehicle = group_by_vehicle(fixes)
    if session_factory is None:
        from dropwatch.database import SessionLocal
        session_factory = SessionLocal

    results: list[dict] = []
    errors: list[str] = []
    workers = min(max(1, cfg.max_workers), len(by_vehicle))

    if workers == 1:
        for name, vehicle_fixes in by_vehicle.items():
            lane_results, lane_errors = _process_vehicle(session_factory, name, vehicle_fixes, cfg, publisher)
            results.extend(lane_results)
            errors.extend(lane_errors)
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
            futures = [
                pool.submit(_process_vehicle, session_factory, name, vehicle_fixes, cfg, publisher)
                for name, vehicle_fixes in by_vehicle.items()
            ]
            for future in futures:
                lane_results, lane_errors = future.result()
                results.extend(lane_results)
                errors.extend(lane_errors)

    logger.info(
        "Ingestion complete: %d fixes, %d vehicles, %d trips, %d traversals, %d alerts, %d errors",
        len(fixes), len(by_vehicle), len(results),
        sum(r["traversals_recorded"] for r in results),
        sum(r["alerts_created"] for r in results),
        len(errors),
    )
    return {
        "ok": not errors,
        "fixes_received": len(fixes),
        "vehicles": len(by_vehicle),
        "results": results,
        "errors": errors[:50],
    }
