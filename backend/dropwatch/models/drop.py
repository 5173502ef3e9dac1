"""Drop entity: a detected positioning gap between two fixes of a trip."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, Float, DateTime, ForeignKey, UniqueConstraint, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from dropwatch.models.base import Base, DropReasonEnum


class Drop(Base):
    __tablename__ = "drops"
    __table_args__ = (
        UniqueConstraint("trip_id", "start_ts", name="uq_drop_trip_start"),
    )

    drop_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trip_id: Mapped[int] = mapped_column(Integer, ForeignKey("trips.trip_id"), nullable=False, index=True)
    start_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    start_lat: Mapped[float] = mapped_column(Float, nullable=False)
    start_lon: Mapped[float] = mapped_column(Float, nullable=False)
    end_lat: Mapped[float] = mapped_column(Float, nullable=False)
    end_lon: Mapped[float] = mapped_column(Float, nullable=False)
    duration_sec: Mapped[float] = mapped_column(Float, nullable=False)
    # micro drops are kept for the instability signal only
    reason: Mapped[str] = mapped_column(SAEnum(DropReasonEnum), nullable=False)
