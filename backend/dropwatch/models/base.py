"""Shared declarative base and enums for all models."""
from __future__ import annotations

import enum
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Sentinel bucket_hour for the all-hours baseline.
GLOBAL_BUCKET = -1


class DropReasonEnum(str, enum.Enum):
    MICRO = "micro"
    TRANSIT = "transit"
    EXTENDED = "extended"


class AlertTypeEnum(str, enum.Enum):
    DELAY = "delay"
    OVERSPEED = "overspeed"


class AlertSeverityEnum(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
