"""Corridor entity: a recurring start-cell → end-cell → direction path."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, DateTime, UniqueConstraint, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from dropwatch.models.base import Base


class Corridor(Base):
    __tablename__ = "corridors"
    __table_args__ = (
        UniqueConstraint("a_cell", "b_cell", "direction", name="uq_corridor_key"),
        CheckConstraint("direction >= 0 AND direction <= 15", name="ck_corridor_direction"),
    )

    corridor_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    a_cell: Mapped[str] = mapped_column(String(20), nullable=False)
    b_cell: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[int] = mapped_column(Integer, nullable=False)
    created_utc: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    traversals: Mapped[list["Traversal"]] = relationship("Traversal", back_populates="corridor")
    baselines: Mapped[list["CorridorBaseline"]] = relationship("CorridorBaseline", back_populates="corridor")

    @property
    def key_str(self) -> str:
        return f"{self.a_cell}:{self.b_cell}:{self.direction}"
