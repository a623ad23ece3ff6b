"""LocationHistoryEntry — append-only chain of a unit's location changes.

Entries are immutable; the only removal is undoing the newest entry of a
unit, and the first entry (from_location_id NULL) anchors the chain and
is never removed.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class LocationHistoryEntry(Base):
    __tablename__ = "unit_location_history"
    __table_args__ = (
        Index("ix_unit_location_history_unit_changed", "unit_id", "changed_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    unit_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("units.id"), nullable=False
    )
    from_location_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("locations.id")
    )
    to_location_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("locations.id"), nullable=False, index=True
    )
    moved_by: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    note: Mapped[str] = mapped_column(Text, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    # ── Relationships ────────────────────────────────────────
    unit = relationship("Unit", lazy="selectin")
    from_location = relationship("Location", foreign_keys=[from_location_id], lazy="selectin")
    to_location = relationship("Location", foreign_keys=[to_location_id], lazy="selectin")
    mover = relationship("User", lazy="selectin")
