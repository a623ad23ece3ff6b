"""Pallet number allocation.

Format:
  PAL-{factory_code}-{part_number}-{MMDDYY}{seq:2}

  {MMDDYY}  → process-local calendar day of creation
  {seq:2}   → 1-based, zero-padded sequence, per (factory, part number, day)

Sequence slots come from the `pallet_sequences` counter row for the key,
read with SELECT … FOR UPDATE so concurrent creators queue on the row
instead of both counting the same pallets.  The first allocation of a day
inserts the row inside a SAVEPOINT, seeded from pallets already carrying
that day's prefix; if another transaction inserted it first, the row is
re-read under lock.
"""

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.factory import Factory, PartNumber
from app.models.pallet import Pallet, PalletSequence


def day_code(day: date) -> str:
    return day.strftime("%m%d%y")


def build_prefix(factory_code: str, part_number: str, day: date) -> str:
    return f"PAL-{factory_code}-{part_number}-{day_code(day)}"


def format_pallet_number(
    factory_code: str, part_number: str, day: date, seq: int
) -> str:
    """e.g. PAL-MX-X1234-07312501"""
    return f"{build_prefix(factory_code, part_number, day)}{seq:02d}"


async def _count_existing(db: AsyncSession, prefix: str) -> int:
    """Count pallets already numbered with the given prefix."""
    result = await db.execute(
        select(func.count(Pallet.id)).where(Pallet.pallet_number.like(f"{prefix}%"))
    )
    return result.scalar() or 0


async def _lock_sequence(
    db: AsyncSession, factory_id: int, part_number_id: int, day: date
) -> PalletSequence | None:
    result = await db.execute(
        select(PalletSequence)
        .where(
            PalletSequence.factory_id == factory_id,
            PalletSequence.part_number_id == part_number_id,
            PalletSequence.day == day,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def next_sequence(
    db: AsyncSession,
    factory: Factory,
    part_number: PartNumber,
    day: date,
) -> int:
    """Atomically take the next slot for (factory, part number, day)."""
    row = await _lock_sequence(db, factory.id, part_number.id, day)
    if row is None:
        seed = await _count_existing(
            db, build_prefix(factory.code, part_number.name, day)
        )
        try:
            async with db.begin_nested():
                db.add(PalletSequence(
                    factory_id=factory.id,
                    part_number_id=part_number.id,
                    day=day,
                    last_value=seed,
                ))
        except IntegrityError:
            # Lost the insert race; the winner's row is now visible
            pass
        row = await _lock_sequence(db, factory.id, part_number.id, day)

    row.last_value += 1
    await db.flush()
    return row.last_value


async def generate_pallet_number(
    db: AsyncSession,
    factory: Factory,
    part_number: PartNumber,
    day: date | None = None,
) -> str:
    """Allocate the next pallet number for the scope.

    Args:
        db: Session inside the creating transaction
        factory: Destination factory (its `code` is used)
        part_number: Part number (its `name` is used)
        day: Calendar day; defaults to today in process-local time

    Returns:
        e.g. "PAL-MX-X1234-07312501"
    """
    day = day or date.today()
    seq = await next_sequence(db, factory, part_number, day)
    return format_pallet_number(factory.code, part_number.name, day, seq)
