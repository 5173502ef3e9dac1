"""Trip entity: a run of a vehicle's fixes bounded by inactivity gaps."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        Index("ix_trips_vehicle_span", "vehicle_id", "start_time", "end_time"),
    )

    trip_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(Integer, ForeignKey("vehicles.vehicle_id"), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # Extended as later fixes of the same trip arrive
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="api_ingest")

    vehicle: Mapped["Vehicle"] = relationship("Vehicle", back_populates="trips")
    fixes: Mapped[list["GPSFix"]] = relationship("GPSFix", back_populates="trip", order_by="GPSFix.timestamp_utc")
