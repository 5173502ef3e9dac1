"""GPSFix entity: individual positional samples, owned by a trip."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, Float, DateTime, ForeignKey, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class GPSFix(Base):
    __tablename__ = "gps_fixes"
    __table_args__ = (
        CheckConstraint("lat >= -90 AND lat <= 90", name="ck_fix_lat_bounds"),
        CheckConstraint("lon >= -180 AND lon <= 180", name="ck_fix_lon_bounds"),
        UniqueConstraint("trip_id", "timestamp_utc", name="uq_fix_trip_ts"),
    )

    fix_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trip_id: Mapped[int] = mapped_column(Integer, ForeignKey("trips.trip_id"), nullable=False, index=True)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    trip: Mapped["Trip"] = relationship("Trip", back_populates="fixes")
