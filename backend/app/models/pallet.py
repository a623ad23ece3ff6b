"""Pallet — a shipping group of RMA units bound for one factory / part number.

Units join and leave a pallet through PalletMembership rows, which form an
interval ledger (added_at / removed_at).  Nothing is ever deleted from the
ledger, so the contents of a pallet can be reconstructed for any instant.

Lifecycle:  open (unlocked ⇄ locked) → released

The lock is a single optional fact (who locked it and when), exposed as
`Pallet.lock` (LockInfo | None).  `locked` is derived from it.  Release
sets doa_number and released_at together with the status and clears the
lock; table constraints reject any row that breaks these rules.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint, Date, DateTime, ForeignKey,
    Index, Integer, String, text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

PALLET_OPEN = "open"
PALLET_RELEASED = "released"


@dataclass(frozen=True)
class LockInfo:
    """Who locked a pallet and when."""
    by: str
    at: datetime


class Pallet(Base):
    __tablename__ = "pallets"
    __table_args__ = (
        CheckConstraint(
            "(locked_at IS NULL) = (locked_by IS NULL)",
            name="ck_pallets_lock_pair",
        ),
        CheckConstraint(
            "(status = 'open' AND doa_number IS NULL AND released_at IS NULL)"
            " OR (status = 'released' AND doa_number IS NOT NULL"
            " AND released_at IS NOT NULL AND locked_at IS NULL)",
            name="ck_pallets_status_fields",
        ),
        Index("ix_pallets_scope_created", "factory_id", "part_number_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pallet_number: Mapped[str] = mapped_column(
        String(60), unique=True, nullable=False, index=True
    )

    # ── Scope (fixed for the pallet's whole life) ────────────
    factory_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("factories.id"), nullable=False
    )
    part_number_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("part_numbers.id"), nullable=False
    )

    # ── Status ───────────────────────────────────────────────
    # open | released
    status: Mapped[str] = mapped_column(String(20), default=PALLET_OPEN, index=True)

    # ── Lock (open pallets only) ─────────────────────────────
    locked_at: Mapped[datetime | None] = mapped_column(DateTime)
    locked_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"))

    # ── Release ──────────────────────────────────────────────
    doa_number: Mapped[str | None] = mapped_column(String(100))
    released_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)

    # Visual marker for telling open pallets apart on the floor
    shape: Mapped[str | None] = mapped_column(String(30))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # ── Relationships ────────────────────────────────────────
    factory = relationship("Factory", lazy="selectin")
    part_number = relationship("PartNumber", lazy="selectin")

    @property
    def lock(self) -> LockInfo | None:
        if self.locked_at is None:
            return None
        return LockInfo(by=self.locked_by, at=self.locked_at)

    @lock.setter
    def lock(self, value: LockInfo | None) -> None:
        if value is None:
            self.locked_by = None
            self.locked_at = None
        else:
            self.locked_by = value.by
            self.locked_at = value.at

    @hybrid_property
    def locked(self) -> bool:
        return self.locked_at is not None

    @locked.expression
    def locked(cls):
        return cls.locked_at.isnot(None)

    @property
    def is_open(self) -> bool:
        return self.status == PALLET_OPEN


class PalletMembership(Base):
    """One interval during which a unit sat on a pallet.

    removed_at NULL means the unit is currently on the pallet.  A unit has
    at most one open membership across all pallets.
    """
    __tablename__ = "pallet_memberships"
    __table_args__ = (
        Index(
            "uq_pallet_memberships_open_unit",
            "unit_id",
            unique=True,
            postgresql_where=text("removed_at IS NULL"),
            sqlite_where=text("removed_at IS NULL"),
        ),
        Index("ix_pallet_memberships_pallet_interval", "pallet_id", "added_at", "removed_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pallet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pallets.id", ondelete="CASCADE"), nullable=False
    )
    unit_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("units.id"), nullable=False, index=True
    )
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime)

    unit = relationship("Unit", lazy="selectin")


class PalletSequence(Base):
    """Per (factory, part number, day) counter behind pallet numbers."""
    __tablename__ = "pallet_sequences"

    factory_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("factories.id"), primary_key=True
    )
    part_number_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("part_numbers.id"), primary_key=True
    )
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
