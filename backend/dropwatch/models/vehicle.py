"""Vehicle entity: one tracked unit, keyed by its external identifier."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    vehicle_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_utc: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    trips: Mapped[list["Trip"]] = relationship("Trip", back_populates="vehicle")
