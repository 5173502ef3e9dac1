"""Traversal entity: one observed transit of a corridor."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, Float, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class Traversal(Base):
    __tablename__ = "traversals"
    __table_args__ = (
        # Idempotency key for redelivered traversals
        UniqueConstraint("corridor_id", "trip_id", "start_ts", name="uq_traversal_identity"),
    )

    traversal_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    corridor_id: Mapped[int] = mapped_column(Integer, ForeignKey("corridors.corridor_id"), nullable=False, index=True)
    trip_id: Mapped[int] = mapped_column(Integer, ForeignKey("trips.trip_id"), nullable=False, index=True)
    start_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    travel_sec: Mapped[float] = mapped_column(Float, nullable=False)
    avg_speed_kmh: Mapped[float] = mapped_column(Float, nullable=False)
    start_lat: Mapped[float] = mapped_column(Float, nullable=False)
    start_lon: Mapped[float] = mapped_column(Float, nullable=False)
    end_lat: Mapped[float] = mapped_column(Float, nullable=False)
    end_lon: Mapped[float] = mapped_column(Float, nullable=False)

    corridor: Mapped["Corridor"] = relationship("Corridor", back_populates="traversals")
