"""CorridorBaseline entity -- learned travel-time/speed statistics per corridor and hour."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, Float, DateTime, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class CorridorBaseline(Base):
    __tablename__ = "corridor_baselines"
    __table_args__ = (
        UniqueConstraint("corridor_id", "bucket_hour", name="uq_baseline_corridor_bucket"),
    )

    baseline_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    corridor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("corridors.corridor_id"), nullable=False, index=True
    )
    # 0-23 for hourly buckets, GLOBAL_BUCKET (-1) for the all-hours fallback
    bucket_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0)
    median_travel_sec: Mapped[float] = mapped_column(Float, nullable=False)
    p95_speed_kmh: Mapped[float] = mapped_column(Float, nullable=False)
    updated_utc: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    corridor = relationship("Corridor", back_populates="baselines")
