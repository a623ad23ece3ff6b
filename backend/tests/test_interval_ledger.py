"""IntervalLedger tests — open/close bookkeeping and the as-of predicate."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.middleware.exceptions import ConflictError, InvalidStateError
from app.models.pallet import PalletMembership
from app.services.pallets import create_pallet, membership_ledger

T0 = datetime(2025, 7, 1, 8, 0, 0)


@pytest.mark.ledger
@pytest.mark.asyncio
class TestIntervalLedger:

    async def _pallets(self, db, alice, n=2):
        return [await create_pallet(db, "X1234", "MX", alice) for _ in range(n)]

    async def test_open_then_active_now(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        unit = await unit_factory("LEDG001")

        await membership_ledger.open(db, pallet.id, unit.id, T0)

        assert await membership_ledger.is_open(db, pallet.id, unit.id)
        assert await membership_ledger.active_at(db, pallet.id, None) == [unit.id]
        assert await membership_ledger.open_owner_of(db, unit.id) == pallet.id

    async def test_open_twice_conflicts(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        unit = await unit_factory("LEDG002")
        await membership_ledger.open(db, pallet.id, unit.id, T0)

        with pytest.raises(ConflictError):
            await membership_ledger.open(db, pallet.id, unit.id, T0 + timedelta(seconds=1))

    async def test_close_without_open_is_invalid_state(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        unit = await unit_factory("LEDG003")

        with pytest.raises(InvalidStateError):
            await membership_ledger.close(db, pallet.id, unit.id, T0)

    async def test_active_at_is_inclusive_at_both_ends(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        unit = await unit_factory("LEDG004")
        t_close = T0 + timedelta(hours=1)
        await membership_ledger.open(db, pallet.id, unit.id, T0)
        await membership_ledger.close(db, pallet.id, unit.id, t_close)

        assert await membership_ledger.active_at(db, pallet.id, T0) == [unit.id]
        assert await membership_ledger.active_at(db, pallet.id, t_close) == [unit.id]
        assert await membership_ledger.active_at(db, pallet.id, T0 - timedelta(microseconds=1)) == []
        assert await membership_ledger.active_at(db, pallet.id, t_close + timedelta(microseconds=1)) == []
        assert await membership_ledger.active_at(db, pallet.id, None) == []

    async def test_reopen_after_close_keeps_history(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        unit = await unit_factory("LEDG005")
        await membership_ledger.open(db, pallet.id, unit.id, T0)
        await membership_ledger.close(db, pallet.id, unit.id, T0 + timedelta(minutes=5))
        await membership_ledger.open(db, pallet.id, unit.id, T0 + timedelta(minutes=10))

        rows = (await db.execute(
            select(func.count(PalletMembership.id)).where(
                PalletMembership.unit_id == unit.id
            )
        )).scalar()
        assert rows == 2
        # A gap between the two stays
        assert await membership_ledger.active_at(db, pallet.id, T0 + timedelta(minutes=7)) == []

    async def test_close_all_uses_one_timestamp(self, db, alice, unit_factory):
        pallet, = await self._pallets(db, alice, 1)
        units = [await unit_factory(f"LEDG01{i}") for i in range(3)]
        for i, unit in enumerate(units):
            await membership_ledger.open(db, pallet.id, unit.id, T0 + timedelta(minutes=i))

        t = T0 + timedelta(hours=2)
        assert await membership_ledger.close_all(db, pallet.id, t) == 3

        removed = (await db.execute(
            select(PalletMembership.removed_at).where(PalletMembership.pallet_id == pallet.id)
        )).scalars().all()
        assert set(removed) == {t}
        assert await membership_ledger.count_open(db, pallet.id) == 0

    async def test_one_open_membership_per_unit_across_pallets(self, db, alice, unit_factory):
        """The partial unique index rejects a second open row for a unit."""
        first, second = await self._pallets(db, alice, 2)
        unit = await unit_factory("LEDG020")
        await membership_ledger.open(db, first.id, unit.id, T0)

        with pytest.raises(IntegrityError):
            async with db.begin_nested():
                db.add(PalletMembership(pallet_id=second.id, unit_id=unit.id, added_at=T0))

        assert await membership_ledger.open_owner_of(db, unit.id) == first.id
