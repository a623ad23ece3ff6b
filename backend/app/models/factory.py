"""Factory and PartNumber — the two keys every pallet is scoped to.

A pallet only ever holds units from one destination factory and one
part number (DPN).  Both are resolved from a unit's PPID.
"""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Factory(Base):
    __tablename__ = "factories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Short code used in pallet numbers, e.g. "MX"
    code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Five-character code embedded in PPIDs, e.g. "WSJ00"
    ppid_code: Mapped[str | None] = mapped_column(String(5), unique=True)


class PartNumber(Base):
    __tablename__ = "part_numbers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
