"""Pallet number allocation tests."""

from datetime import date

import pytest
from sqlalchemy import select

from app.models.factory import Factory, PartNumber
from app.models.pallet import Pallet, PalletSequence
from app.services.pallets import create_pallet
from app.utils.numbering import (
    build_prefix,
    format_pallet_number,
    generate_pallet_number,
)


@pytest.mark.unit
class TestFormat:

    def test_format(self):
        assert format_pallet_number("MX", "X1234", date(2025, 7, 31), 1) == "PAL-MX-X1234-07312501"

    def test_sequence_past_99_widens(self):
        assert format_pallet_number("MX", "X1234", date(2025, 7, 31), 100).endswith("073125100")

    def test_prefix(self):
        assert build_prefix("A1", "Y5678", date(2026, 1, 2)) == "PAL-A1-Y5678-010226"


@pytest.mark.pallet
@pytest.mark.asyncio
class TestAllocation:

    async def _scope(self, db, code="MX", dpn="X1234"):
        factory = (await db.execute(select(Factory).where(Factory.code == code))).scalar_one()
        part = (await db.execute(select(PartNumber).where(PartNumber.name == dpn))).scalar_one()
        return factory, part

    async def test_sequence_is_per_scope_and_day(self, db):
        mx, x1234 = await self._scope(db)
        a1, _ = await self._scope(db, "A1")
        day = date(2025, 7, 31)

        assert await generate_pallet_number(db, mx, x1234, day) == "PAL-MX-X1234-07312501"
        assert await generate_pallet_number(db, mx, x1234, day) == "PAL-MX-X1234-07312502"
        assert await generate_pallet_number(db, a1, x1234, day) == "PAL-A1-X1234-07312501"
        assert await generate_pallet_number(db, mx, x1234, date(2025, 8, 1)) == "PAL-MX-X1234-08012501"

    async def test_counter_seeded_from_existing_numbers(self, db):
        """Pallets numbered before the counter row existed are not reused."""
        mx, x1234 = await self._scope(db)
        day = date(2025, 7, 31)
        db.add(Pallet(
            pallet_number=format_pallet_number("MX", "X1234", day, 1),
            factory_id=mx.id,
            part_number_id=x1234.id,
        ))
        await db.flush()

        assert await generate_pallet_number(db, mx, x1234, day) == "PAL-MX-X1234-07312502"
        seq = (await db.execute(select(PalletSequence))).scalar_one()
        assert seq.last_value == 2

    async def test_create_skips_taken_numbers(self, db, alice):
        """A legacy gap (01 and 03 taken) costs one slot, then creation succeeds."""
        mx, x1234 = await self._scope(db)
        today = date.today()
        for seq in (1, 3):
            db.add(Pallet(
                pallet_number=format_pallet_number("MX", "X1234", today, seq),
                factory_id=mx.id,
                part_number_id=x1234.id,
            ))
        await db.flush()

        pallet = await create_pallet(db, "X1234", "MX", alice)

        assert pallet.pallet_number == format_pallet_number("MX", "X1234", today, 4)

    async def test_sequential_creates_never_share_a_number(self, db, alice):
        numbers = [
            (await create_pallet(db, "X1234", "MX", alice)).pallet_number
            for _ in range(5)
        ]
        assert len(set(numbers)) == 5
        assert [n[-2:] for n in numbers] == ["01", "02", "03", "04", "05"]
