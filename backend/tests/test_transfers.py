"""Unit transfers between open pallets."""

from datetime import datetime

import pytest
from sqlalchemy import select

from app.middleware.exceptions import (
    InvalidInputError,
    InvalidStateError,
    ResourceNotFoundError,
)
from app.models.pallet import PalletMembership
from app.services import pallets as pallet_service
from app.services.transfers import move_unit

ledger = pallet_service.membership_ledger


@pytest.mark.pallet
@pytest.mark.asyncio
class TestMoveUnit:

    async def _two_pallets(self, db, alice):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        p2 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        return p1, p2

    async def test_move_closes_and_opens_at_one_instant(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        unit = await unit_factory("MOVE001", rma=True)
        assert await ledger.open_owner_of(db, unit.id) == p1.id

        source, target = await move_unit(db, "MOVE001", p1.pallet_number, p2.pallet_number, alice)

        assert (source.id, target.id) == (p1.id, p2.id)
        assert await ledger.open_owner_of(db, unit.id) == p2.id
        assert await pallet_service.snapshot(db, p1) == []

        # Closed on p1 exactly when it opened on p2
        rows = (await db.execute(
            select(PalletMembership).where(PalletMembership.unit_id == unit.id)
        )).scalars().all()
        by_pallet = {m.pallet_id: m for m in rows}
        assert by_pallet[p1.id].removed_at == by_pallet[p2.id].added_at
        assert by_pallet[p2.id].removed_at is None

    async def test_part_number_mismatch_leaves_memberships(self, db, alice, unit_factory):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        other = await pallet_service.create_pallet(db, "Y5678", "MX", alice)
        unit = await unit_factory("MOVE010", rma=True)

        with pytest.raises(InvalidInputError) as exc_info:
            await move_unit(db, "MOVE010", p1.pallet_number, other.pallet_number, alice)

        assert exc_info.value.details == {"part_number": ["X1234", "Y5678"]}
        assert await ledger.open_owner_of(db, unit.id) == p1.id
        assert await pallet_service.snapshot(db, other) == []

    async def test_factory_mismatch(self, db, alice, unit_factory):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        other = await pallet_service.create_pallet(db, "X1234", "A1", alice)
        await unit_factory("MOVE011", rma=True)

        with pytest.raises(InvalidInputError) as exc_info:
            await move_unit(db, "MOVE011", p1.pallet_number, other.pallet_number, alice)

        assert exc_info.value.details == {"factory": ["MX", "A1"]}

    async def test_locked_source_blocks_move(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        unit = await unit_factory("MOVE020", rma=True)
        await pallet_service.set_pallet_lock(db, p1.pallet_number, True, alice)

        with pytest.raises(InvalidStateError):
            await move_unit(db, "MOVE020", p1.pallet_number, p2.pallet_number, alice)

        assert await ledger.open_owner_of(db, unit.id) == p1.id

    async def test_locked_target_blocks_move(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        await unit_factory("MOVE021", rma=True)
        await pallet_service.set_pallet_lock(db, p2.pallet_number, True, alice)

        with pytest.raises(InvalidStateError):
            await move_unit(db, "MOVE021", p1.pallet_number, p2.pallet_number, alice)

    async def test_released_target_blocks_move(self, db, alice, unit_factory):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        await unit_factory("MOVE030", rma=True)
        await pallet_service.release_pallet(db, p1.pallet_number, "DOA00001", alice)
        p2 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        await unit_factory("MOVE031", rma=True)

        with pytest.raises(InvalidStateError):
            await move_unit(db, "MOVE031", p2.pallet_number, p1.pallet_number, alice)

    async def test_unit_not_on_source(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        await unit_factory("MOVE040", rma=True)

        with pytest.raises(InvalidStateError):
            await move_unit(db, "MOVE040", p2.pallet_number, p1.pallet_number, alice)

    async def test_same_pallet_twice(self, db, alice, unit_factory):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        await unit_factory("MOVE050", rma=True)

        with pytest.raises(InvalidInputError):
            await move_unit(db, "MOVE050", p1.pallet_number, p1.pallet_number, alice)

    async def test_unknown_unit_or_pallet(self, db, alice, unit_factory):
        p1 = await pallet_service.create_pallet(db, "X1234", "MX", alice)
        await unit_factory("MOVE060", rma=True)

        with pytest.raises(ResourceNotFoundError):
            await move_unit(db, "NOPE", p1.pallet_number, "PAL-X", alice)
        with pytest.raises(ResourceNotFoundError):
            await move_unit(db, "MOVE060", p1.pallet_number, "PAL-X", alice)

    async def test_unit_outside_rma_is_not_moved(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        unit = await unit_factory("MOVE070")
        await ledger.open(db, p1.id, unit.id, datetime.utcnow())

        with pytest.raises(InvalidStateError) as exc_info:
            await move_unit(db, "MOVE070", p1.pallet_number, p2.pallet_number, alice)

        assert "not in an RMA location" in exc_info.value.message
        assert await ledger.open_owner_of(db, unit.id) == p1.id

    async def test_service_tag_matched_case_insensitively(self, db, alice, unit_factory):
        p1, p2 = await self._two_pallets(db, alice)
        unit = await unit_factory("MOVE080", rma=True)

        await move_unit(db, " move080 ", p1.pallet_number, p2.pallet_number, alice)

        assert await ledger.open_owner_of(db, unit.id) == p2.id
