"""Pydantic schemas for the fix ingestion boundary."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from dropwatch.utils.timeutil import to_naive_utc


class FixIn(BaseModel):
    """One normalized positional fix. Accepts camelCase or snake_case keys."""
    vehicle_id: str = Field(..., alias="vehicleId", min_length=1)
    ts: datetime
    lat: float = Field(..., ge=-90.0, le=90.0, allow_inf_nan=False)
    lon: float = Field(..., ge=-180.0, le=180.0, allow_inf_nan=False)
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _coerce_vehicle_id(cls, value):
        if isinstance(value, (int, float)):
            return str(value)
        return value.strip() if isinstance(value, str) else value

    @field_validator("ts")
    @classmethod
    def _normalize_ts(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class IngestTripResult(BaseModel):
    trip_id: int
    vehicle: str
    points_processed: int
    drops_detected: int
    traversals_recorded: int
    alerts_created: int


class IngestSummary(BaseModel):
    ok: bool
    fixes_received: int
    vehicles: int
    results: list[IngestTripResult]
    errors: list[str]
