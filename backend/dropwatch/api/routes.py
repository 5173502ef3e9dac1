from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile
from sqlalchemy.orm import Session, sessionmaker

from dropwatch.config import settings
from dropwatch.database import get_db, get_session_factory
from dropwatch.schemas.alerts import AlertRead
from dropwatch.schemas.corridor import CorridorList
from dropwatch.schemas.fix import IngestSummary

logger = logging.getLogger(__name__)

router = APIRouter()


def _validate_date_range(date_from: Optional[datetime], date_to: Optional[datetime]) -> None:
    """Reject if date_from is after date_to."""
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=422, detail="date_from must be <= date_to")


def _check_upload_size(file: UploadFile) -> None:
    """Reject uploads exceeding MAX_UPLOAD_SIZE_MB."""
    file.file.seek(0, 2)  # seek to end
    size_mb = file.file.tell() / (1024 * 1024)
    file.file.seek(0)  # reset
    if size_mb > settings.MAX_UPLOAD_SIZE_MB:
        raise HTTPException(
            status_code=413,
            detail=f"File too large ({size_mb:.1f} MB). Max: {settings.MAX_UPLOAD_SIZE_MB} MB.",
        )


# ---------------------------------------------------------------------------
# Fix Ingestion
# ---------------------------------------------------------------------------

@router.post("/ingest", tags=["ingestion"], response_model=IngestSummary)
def ingest(
    payload: Any = Body(...),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Ingest one fix or a list of fixes and run the corridor pipeline.

    Any malformed fix rejects the whole batch (422).
    """
    from dropwatch.modules.ingest import ingest_fix_batch
    return ingest_fix_batch(payload, session_factory=session_factory)


@router.post("/fixes/import", tags=["ingestion"], response_model=IngestSummary)
def import_fixes(
    file: UploadFile = File(...),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Ingest a normalized fix CSV (vehicle_id, ts, lat, lon[, speed, accuracy, heading])."""
    from dropwatch.modules.ingest import ingest_fix_batch, load_fixes_csv

    _check_upload_size(file)
    rows = load_fixes_csv(file.file)
    return ingest_fix_batch(rows, session_factory=session_factory)


# ---------------------------------------------------------------------------
# Corridors and baselines
# ---------------------------------------------------------------------------

@router.get("/corridors", tags=["corridors"], response_model=CorridorList)
def get_corridors(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort: str = Query("count", pattern="^(count|deviation|median)$"),
    limit: int = Query(100, ge=1),
    db: Session = Depends(get_db),
):
    """Corridors with traversal counts, global baselines and last-traversal deviation."""
    from dropwatch.modules.corridor_report import list_corridors

    _validate_date_range(date_from, date_to)
    return list_corridors(db, date_from, date_to, sort=sort, limit=min(limit, settings.MAX_QUERY_LIMIT))


@router.post("/compute/baselines", tags=["corridors"])
def compute_baselines(db: Session = Depends(get_db)):
    """Recompute every corridor's baselines from its traversal history."""
    from dropwatch.modules.baseline_store import recompute_all_baselines
    return recompute_all_baselines(db)


@router.get("/heatmap", tags=["corridors"])
def heatmap(
    h3res: Optional[int] = Query(None, ge=0, le=15),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """GeoJSON of cells with drop counts and instability scores."""
    from dropwatch.modules.instability import compute_hex_instability

    _validate_date_range(date_from, date_to)
    return compute_hex_instability(db, resolution=h3res, date_from=date_from, date_to=date_to)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/alerts", tags=["alerts"], response_model=list[AlertRead])
def get_alerts(
    alert_type: Optional[str] = Query(None, pattern="^(delay|overspeed)$"),
    include_resolved: bool = False,
    limit: int = Query(100, ge=1),
    db: Session = Depends(get_db),
):
    from dropwatch.models.alert import Alert
    from dropwatch.models.base import AlertTypeEnum

    q = db.query(Alert)
    if alert_type:
        q = q.filter(Alert.alert_type == AlertTypeEnum(alert_type))
    if not include_resolved:
        q = q.filter(Alert.resolved_utc.is_(None))
    return q.order_by(Alert.created_utc.desc()).limit(min(limit, settings.MAX_QUERY_LIMIT)).all()


@router.post("/alerts/{alert_id}/resolve", tags=["alerts"], response_model=AlertRead)
def resolve(alert_id: int, db: Session = Depends(get_db)):
    """Resolve an alert; its trip/corridor/type slot may alert again afterwards."""
    from dropwatch.modules.alert_engine import resolve_alert

    alert = resolve_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    db.commit()
    db.refresh(alert)
    return alert
