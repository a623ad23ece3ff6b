"""Move a unit from one open pallet to another.

Lock order is the same as everywhere else: the unit row first, then both
pallet rows in ascending id order.  Status, lock and scope are checked
only after the locks are held, and the close/open pair shares one
timestamp so the unit is never off both pallets at any instant.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import InvalidInputError, InvalidStateError
from app.models.pallet import Pallet
from app.services import pallets
from app.services.locations import get_location
from app.services.units import lock_unit
from app.utils.activity import log_activity

logger = logging.getLogger("tracker.transfers")


async def move_unit(
    db: AsyncSession,
    service_tag: str,
    from_number: str,
    to_number: str,
    actor_id: str,
) -> tuple[Pallet, Pallet]:
    """Transfer `service_tag` from pallet `from_number` to `to_number`.

    Raises:
        ResourceNotFoundError: unit or either pallet unknown
        InvalidInputError: same pallet twice, or scopes differ
        InvalidStateError: a pallet is released or locked, the unit is not
            on `from_number`, or the unit is not in an RMA location
    """
    unit = await lock_unit(db, service_tag)
    service_tag = unit.service_tag
    source = await pallets.find_pallet(db, from_number)
    target = await pallets.find_pallet(db, to_number)
    if source.id == target.id:
        raise InvalidInputError("Source and destination pallet are the same")

    locked = {}
    for pallet_id in sorted([source.id, target.id]):
        locked[pallet_id] = await pallets.lock_pallet_row(db, pallet_id)
    source, target = locked[source.id], locked[target.id]

    for pallet in (source, target):
        if not pallet.is_open:
            raise InvalidStateError(
                f"Pallet {pallet.pallet_number} is {pallet.status}"
            )
    for pallet in (source, target):
        if pallet.locked:
            raise InvalidStateError(f"Pallet {pallet.pallet_number} is locked")

    mismatch = {}
    if source.factory_id != target.factory_id:
        mismatch["factory"] = [source.factory.code, target.factory.code]
    if source.part_number_id != target.part_number_id:
        mismatch["part_number"] = [source.part_number.name, target.part_number.name]
    if mismatch:
        raise InvalidInputError(
            f"Pallets {from_number} and {to_number} differ in "
            + " and ".join(mismatch).replace("_", " "),
            details=mismatch,
        )

    if not await pallets.membership_ledger.is_open(db, source.id, unit.id):
        raise InvalidStateError(f"Unit {service_tag} is not on pallet {from_number}")

    location = await get_location(db, unit.location_id)
    if not location.is_rma:
        raise InvalidStateError(
            f"Unit {service_tag} is at {location.name}, not in an RMA location"
        )

    moved_at = datetime.utcnow()
    await pallets.membership_ledger.close(db, source.id, unit.id, moved_at)
    await pallets.membership_ledger.open(db, target.id, unit.id, moved_at)

    await log_activity(
        db, actor_id,
        action="moved",
        entity_type="pallet",
        entity_id=target.id,
        entity_code=target.pallet_number,
        summary=f"Moved {service_tag} from {from_number} to {to_number}",
        details={"service_tag": service_tag, "from": from_number, "to": to_number},
    )
    logger.info("Moved %s: %s -> %s", service_tag, from_number, to_number)
    return source, target
