"""Delay and overspeed alerting against corridor baselines.

A traversal is compared with the applicable baseline of its corridor
(hourly bucket for its start hour, else the global bucket):

  delay      travel_sec - median_travel_sec >= DELAY_THRESHOLD_MINUTES × 60
  overspeed  avg_speed_kmh - p95_speed_kmh > 0 (with a non-zero p95)

The two checks are independent. An unresolved alert of the same type for
the same (trip, corridor) suppresses a new one; existing alerts are never
re-evaluated or escalated.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from dropwatch.config import settings
from dropwatch.models.alert import Alert
from dropwatch.models.base import AlertSeverityEnum, AlertTypeEnum
from dropwatch.modules.alert_fanout import AlertPublisher, alert_publisher
from dropwatch.modules.baseline_store import BaselineLike, get_applicable_baseline, get_corridor_baselines
from dropwatch.schemas.alerts import AlertMessage
from dropwatch.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

# Overspeed severity is graded against 10% of the corridor's p95 speed
_OVERSPEED_SEVERITY_FRACTION = 0.1


class TraversalLike(Protocol):
    corridor_id: int
    start_ts: object
    travel_sec: float
    avg_speed_kmh: float


def check_delay(travel_sec: float, baseline: BaselineLike, threshold_minutes: float) -> tuple[bool, float]:
    delta_sec = travel_sec - baseline.median_travel_sec
    return delta_sec >= threshold_minutes * 60, delta_sec


def check_overspeed(avg_speed_kmh: float, baseline: BaselineLike) -> tuple[bool, float]:
    delta_kmh = avg_speed_kmh - baseline.p95_speed_kmh
    return delta_kmh > 0 and baseline.p95_speed_kmh > 0, delta_kmh


def alert_severity(delta_value: float, threshold: float) -> AlertSeverityEnum:
    """high at ≥2× the threshold, medium at ≥1.5×, otherwise low."""
    if threshold <= 0:
        return AlertSeverityEnum.LOW
    ratio = abs(delta_value) / threshold
    if ratio >= 2:
        return AlertSeverityEnum.HIGH
    if ratio >= 1.5:
        return AlertSeverityEnum.MEDIUM
    return AlertSeverityEnum.LOW


def find_open_alert(db: Session, trip_id: int, corridor_id: int, alert_type: AlertTypeEnum) -> Optional[Alert]:
    return (
        db.query(Alert)
        .filter(
            Alert.trip_id == trip_id,
            Alert.corridor_id == corridor_id,
            Alert.alert_type == alert_type,
            Alert.resolved_utc.is_(None),
        )
        .first()
    )


def _create_alert(
    db: Session,
    alert_type: AlertTypeEnum,
    traversal: TraversalLike,
    trip_id: int,
    vehicle_id: int,
    delta_value: float,
    threshold: float,
    details: dict,
) -> Optional[Alert]:
    if find_open_alert(db, trip_id, traversal.corridor_id, alert_type) is not None:
        logger.debug(
            "Suppressed duplicate %s alert (trip=%d, corridor=%d)",
            alert_type.value, trip_id, traversal.corridor_id,
        )
        return None
    alert = Alert(
        alert_type=alert_type,
        severity=alert_severity(delta_value, threshold),
        corridor_id=traversal.corridor_id,
        trip_id=trip_id,
        vehicle_id=vehicle_id,
        delta_value=delta_value,
        details_json=details,
        created_utc=utcnow(),
    )
    db.add(alert)
    db.flush()
    logger.info(
        "%s alert %d (%s): corridor=%d trip=%d delta=%.1f",
        alert_type.value, alert.alert_id, AlertSeverityEnum(alert.severity).value,
        traversal.corridor_id, trip_id, delta_value,
    )
    return alert


def evaluate_traversal(
    db: Session,
    traversal: TraversalLike,
    trip_id: int,
    vehicle_id: int,
    delay_threshold_minutes: float | None = None,
) -> list[Alert]:
    """Create delay/overspeed alerts for a traversal. Returns the new alerts.

    Uses flush, not commit. Publish the returned alerts with
    publish_alerts() once the caller has committed.
    """
    if delay_threshold_minutes is None:
        delay_threshold_minutes = settings.DELAY_THRESHOLD_MINUTES

    baselines = get_corridor_baselines(db, traversal.corridor_id)
    if not baselines:
        return []
    baseline = get_applicable_baseline(baselines, traversal.start_ts)
    if baseline is None:
        return []

    created: list[Alert] = []

    is_delay, delta_sec = check_delay(traversal.travel_sec, baseline, delay_threshold_minutes)
    if is_delay:
        alert = _create_alert(
            db, AlertTypeEnum.DELAY, traversal, trip_id, vehicle_id,
            delta_value=delta_sec,
            threshold=delay_threshold_minutes * 60,
            details={
                "travelSec": traversal.travel_sec,
                "baselineMedianSec": baseline.median_travel_sec,
                "bucketHour": baseline.bucket_hour,
            },
        )
        if alert is not None:
            created.append(alert)

    is_overspeed, delta_kmh = check_overspeed(traversal.avg_speed_kmh, baseline)
    if is_overspeed:
        alert = _create_alert(
            db, AlertTypeEnum.OVERSPEED, traversal, trip_id, vehicle_id,
            delta_value=delta_kmh,
            threshold=baseline.p95_speed_kmh * _OVERSPEED_SEVERITY_FRACTION,
            details={
                "avgSpeedKmh": traversal.avg_speed_kmh,
                "p95SpeedKmh": baseline.p95_speed_kmh,
                "bucketHour": baseline.bucket_hour,
            },
        )
        if alert is not None:
            created.append(alert)

    return created


def to_alert_message(alert: Alert) -> AlertMessage:
    return AlertMessage(
        id=alert.alert_id,
        type=AlertTypeEnum(alert.alert_type).value,
        severity=AlertSeverityEnum(alert.severity).value,
        time=alert.created_utc,
        corridor_id=alert.corridor_id,
        trip_id=alert.trip_id,
        vehicle_id=alert.vehicle_id,
        delta_value=alert.delta_value,
        details=alert.details_json,
    )


def publish_alerts(alerts: Iterable[AlertMessage], publisher: AlertPublisher | None = None) -> int:
    """Hand committed alerts to the fan-out. Returns number of alerts published."""
    publisher = publisher or alert_publisher
    count = 0
    for message in alerts:
        publisher.publish(message)
        count += 1
    return count


def resolve_alert(db: Session, alert_id: int) -> Optional[Alert]:
    """Mark an alert resolved so the (trip, corridor, type) slot can alert again."""
    alert = db.get(Alert, alert_id)
    if alert is None:
        return None
    if alert.resolved_utc is None:
        alert.resolved_utc = utcnow()
        db.flush()
        logger.info("Resolved alert %d", alert_id)
    return alert
