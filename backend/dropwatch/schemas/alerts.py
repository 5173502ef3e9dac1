"""Pydantic schemas for alert messages and alert operations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from dropwatch.models.base import AlertSeverityEnum, AlertTypeEnum


class AlertMessage(BaseModel):
    """Payload handed to alert subscribers."""
    id: int
    type: str
    severity: str
    time: datetime
    corridor_id: int = Field(..., serialization_alias="corridorId")
    trip_id: int = Field(..., serialization_alias="tripId")
    vehicle_id: int = Field(..., serialization_alias="vehicleId")
    delta_value: float = Field(..., serialization_alias="deltaValue")
    details: Optional[dict[str, Any]] = None


class AlertRead(BaseModel):
    alert_id: int
    alert_type: AlertTypeEnum
    severity: AlertSeverityEnum
    corridor_id: int
    trip_id: int
    vehicle_id: int
    delta_value: float
    details_json: Optional[dict[str, Any]] = None
    created_utc: datetime
    resolved_utc: Optional[datetime] = None

    model_config = {"from_attributes": True}
