"""Pydantic schemas for corridor listings."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class CorridorSummary(BaseModel):
    corridor_id: int
    a_cell: str
    b_cell: str
    direction: int
    count: int
    median_sec: float
    p95_speed_kmh: float
    last_seen: Optional[datetime] = None
    deviation_sec: float
    deviation_formatted: Optional[str] = None
    deviation_sign: str


class CorridorList(BaseModel):
    corridors: list[CorridorSummary]
    total: int
