"""Alert entity: a delay or overspeed deviation on a corridor traversal."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, Float, DateTime, JSON, ForeignKey, Index, Enum as SAEnum, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base, AlertTypeEnum, AlertSeverityEnum


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        # At most one unresolved alert per (trip, corridor, type)
        Index(
            "uq_alert_open_trip_corridor_type",
            "trip_id", "corridor_id", "alert_type",
            unique=True,
            sqlite_where=text("resolved_utc IS NULL"),
            postgresql_where=text("resolved_utc IS NULL"),
        ),
    )

    alert_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_type: Mapped[str] = mapped_column(SAEnum(AlertTypeEnum), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(SAEnum(AlertSeverityEnum), nullable=False)
    corridor_id: Mapped[int] = mapped_column(Integer, ForeignKey("corridors.corridor_id"), nullable=False, index=True)
    trip_id: Mapped[int] = mapped_column(Integer, ForeignKey("trips.trip_id"), nullable=False, index=True)
    vehicle_id: Mapped[int] = mapped_column(Integer, ForeignKey("vehicles.vehicle_id"), nullable=False)
    # Signed: seconds for delay, km/h for overspeed
    delta_value: Mapped[float] = mapped_column(Float, nullable=False)
    details_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_utc: Mapped[datetime] = mapped_column(DateTime, default=func.now(), index=True)
    resolved_utc: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    corridor = relationship("Corridor")
    vehicle = relationship("Vehicle")
