"""Unit — a physical system tracked through the repair pipeline.

Identified by its service tag.  `location_id` always mirrors the
to_location of the unit's newest history entry; it is only changed
through the location history ledger.

The PPID-derived fields (factory, part number, date, serial, rev) are
filled when the PPID is recorded, and a unit without a PPID blocks the
release of any pallet it sits on.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Unit(Base):
    __tablename__ = "units"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    service_tag: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )
    issue: Mapped[str | None] = mapped_column(Text)

    location_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("locations.id"), nullable=False, index=True
    )

    # ── PPID and derived fields ──────────────────────────────
    ppid: Mapped[str | None] = mapped_column(String(40), unique=True)
    factory_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("factories.id"), index=True
    )
    part_number_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("part_numbers.id"), index=True
    )
    manufactured_date: Mapped[date | None] = mapped_column(Date)
    serial: Mapped[str | None] = mapped_column(String(10))
    rev: Mapped[str | None] = mapped_column(String(10))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # ── Relationships ────────────────────────────────────────
    location = relationship("Location", lazy="selectin")
    factory = relationship("Factory", lazy="selectin")
    part_number = relationship("PartNumber", lazy="selectin")

    @property
    def has_ppid(self) -> bool:
        return bool(self.ppid and self.ppid.strip())
