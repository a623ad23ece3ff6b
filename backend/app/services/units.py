"""Units (systems) and their location changes.

A location change is one transaction:
  1. row-lock the unit
  2. refuse if the unit sits on a locked pallet
  3. pallet side effects:
       entering RMA  → auto-assign to an open pallet for its factory / DPN
       leaving RMA   → close its open membership
  4. append the history entry (the unit's location moves with it)
"""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.config import settings
from app.middleware.exceptions import (
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    ResourceNotFoundError,
)
from app.models.factory import Factory, PartNumber
from app.models.location import Location
from app.models.location_history import LocationHistoryEntry
from app.models.unit import Unit
from app.models.user import User
from app.services import location_history, pallets
from app.services.locations import get_location, intake_location
from app.utils.activity import log_activity
from app.utils.cache import cached
from app.utils.filters import build_where, resolve_sort
from app.utils.ppid import parse_ppid

logger = logging.getLogger("tracker.units")

UNIT_FILTER_FIELDS = {
    "service_tag": Unit.service_tag,
    "issue": Unit.issue,
    "location_id": Unit.location_id,
    "location": Location.name,
    "ppid": Unit.ppid,
    "factory": Factory.code,
    "part_number": PartNumber.name,
    "created_at": Unit.created_at,
}

UNIT_SORT_FIELDS = {
    "service_tag": Unit.service_tag,
    "location": Location.name,
    "issue": Unit.issue,
    "created_at": Unit.created_at,
}


# ── Lookups ──────────────────────────────────────────────────

def normalize_tag(service_tag: str | None) -> str:
    """Service tags are stored trimmed and uppercased."""
    return (service_tag or "").strip().upper()


async def get_unit(db: AsyncSession, service_tag: str) -> Unit:
    result = await db.execute(
        select(Unit).where(Unit.service_tag == normalize_tag(service_tag))
    )
    unit = result.scalar_one_or_none()
    if unit is None:
        raise ResourceNotFoundError("Unit", service_tag)
    return unit


async def lock_unit(db: AsyncSession, service_tag: str) -> Unit:
    """Row-lock the unit; first lock taken by every unit-touching write."""
    result = await db.execute(
        select(Unit)
        .where(Unit.service_tag == normalize_tag(service_tag))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    unit = result.scalar_one_or_none()
    if unit is None:
        raise ResourceNotFoundError("Unit", service_tag)
    return unit


async def unit_detail(db: AsyncSession, service_tag: str) -> dict:
    """Unit with who added it, when, and its last move."""
    unit = await get_unit(db, service_tag)

    first_by = aliased(User)
    first = (
        await db.execute(
            select(LocationHistoryEntry.changed_at, first_by.username)
            .join(first_by, first_by.id == LocationHistoryEntry.moved_by)
            .where(LocationHistoryEntry.unit_id == unit.id)
            .order_by(LocationHistoryEntry.changed_at, LocationHistoryEntry.id)
            .limit(1)
        )
    ).first()
    last_changed = (
        await db.execute(
            select(func.max(LocationHistoryEntry.changed_at)).where(
                LocationHistoryEntry.unit_id == unit.id
            )
        )
    ).scalar()
    pallet_id = await pallets.membership_ledger.open_owner_of(db, unit.id)
    pallet_number = None
    if pallet_id is not None:
        pallet_number = await db.scalar(
            select(pallets.Pallet.pallet_number).where(pallets.Pallet.id == pallet_id)
        )

    return {
        "unit": unit,
        "date_created": first[0] if first else unit.created_at,
        "added_by": first[1] if first else None,
        "date_modified": last_changed,
        "pallet_number": pallet_number,
    }


async def list_units(
    db: AsyncSession,
    filters: dict | None = None,
    sort_by: str | None = "service_tag",
    sort_order: str | None = "asc",
    limit: int | None = 50,
    offset: int = 0,
) -> tuple[list[Unit], int]:
    base = (
        select(Unit)
        .join(Location, Location.id == Unit.location_id)
        .outerjoin(Factory, Factory.id == Unit.factory_id)
        .outerjoin(PartNumber, PartNumber.id == Unit.part_number_id)
    )
    if filters and filters.get("conditions"):
        base = base.where(build_where(filters, UNIT_FILTER_FIELDS))

    total = (
        await db.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0

    stmt = base.order_by(
        resolve_sort(sort_by, sort_order, UNIT_SORT_FIELDS, "service_tag"),
        Unit.id,
    )
    if limit is not None:
        stmt = stmt.limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all()), total


# ── Create / edit ────────────────────────────────────────────

async def create_unit(
    db: AsyncSession,
    service_tag: str,
    actor_id: str,
    issue: str | None = None,
    location_id: int | None = None,
    note: str | None = None,
) -> Unit:
    """Register a unit and write the entry that anchors its history."""
    tag = normalize_tag(service_tag)
    if not tag:
        raise InvalidInputError("service_tag is required")

    exists = await db.scalar(select(Unit.id).where(Unit.service_tag == tag))
    if exists:
        raise ConflictError(f"Unit {tag} already exists", details={"service_tag": tag})

    location = (
        await get_location(db, location_id)
        if location_id is not None
        else await intake_location(db)
    )
    if location.is_rma:
        raise InvalidInputError(
            "A new unit cannot start in an RMA location. Update PPID first."
        )

    unit = Unit(service_tag=tag, issue=issue, location_id=location.id)
    db.add(unit)
    await db.flush()

    await location_history.append(
        db, unit, location.id, actor_id, (note or "").strip() or "Added to system"
    )
    await log_activity(
        db, actor_id,
        action="created",
        entity_type="unit",
        entity_id=unit.id,
        entity_code=unit.service_tag,
        summary=f"Added unit {unit.service_tag} at {location.name}",
    )
    await db.refresh(unit, ["location", "factory", "part_number"])
    return unit


async def update_issue(
    db: AsyncSession, service_tag: str, issue: str | None, actor_id: str
) -> Unit:
    unit = await lock_unit(db, service_tag)
    unit.issue = issue
    await db.flush()
    await log_activity(
        db, actor_id,
        action="updated",
        entity_type="unit",
        entity_id=unit.id,
        entity_code=unit.service_tag,
        summary=f"Updated issue on {unit.service_tag}",
    )
    return unit


async def update_ppid(
    db: AsyncSession, service_tag: str, raw_ppid: str, actor_id: str
) -> Unit:
    """Record a unit's PPID and the fields decoded from it.

    The part number is registered on first sight; the factory must already
    be known by its PPID code, otherwise the unit keeps the factory it had.  A unit
    sitting on a pallet cannot change its factory or part number.
    """
    parsed = parse_ppid(raw_ppid)
    unit = await lock_unit(db, service_tag)

    taken = await db.scalar(
        select(Unit.service_tag).where(Unit.ppid == parsed.ppid, Unit.id != unit.id)
    )
    if taken:
        raise ConflictError(
            f"PPID {parsed.ppid} already belongs to {taken}",
            details={"ppid": parsed.ppid, "service_tag": taken},
        )

    dpn = (
        await db.execute(select(PartNumber).where(PartNumber.name == parsed.part_number))
    ).scalar_one_or_none()
    if dpn is None:
        dpn = PartNumber(name=parsed.part_number)
        db.add(dpn)
        await db.flush()

    factory = (
        await db.execute(select(Factory).where(Factory.ppid_code == parsed.factory_code))
    ).scalar_one_or_none()
    if factory is None:
        logger.warning(
            "Unit %s: unknown factory code %s in PPID", unit.service_tag, parsed.factory_code
        )

    factory_id = factory.id if factory else unit.factory_id
    if (factory_id, dpn.id) != (unit.factory_id, unit.part_number_id):
        if await pallets.membership_ledger.open_owner_of(db, unit.id) is not None:
            raise InvalidStateError(
                f"Unit {unit.service_tag} is on a pallet; its factory or part number cannot change"
            )

    unit.ppid = parsed.ppid
    unit.part_number_id = dpn.id
    unit.factory_id = factory_id
    unit.manufactured_date = parsed.manufactured_date
    unit.serial = parsed.serial
    unit.rev = parsed.rev
    await db.flush()
    # Relationships were loaded with the old ids
    await db.refresh(unit, ["factory", "part_number"])

    await log_activity(
        db, actor_id,
        action="updated",
        entity_type="unit",
        entity_id=unit.id,
        entity_code=unit.service_tag,
        summary=f"Recorded PPID {parsed.ppid} on {unit.service_tag}",
    )
    return unit


# ── Location changes ─────────────────────────────────────────

async def change_location(
    db: AsyncSession,
    service_tag: str,
    to_location_id: int,
    note: str,
    actor_id: str,
) -> tuple[LocationHistoryEntry, str | None]:
    """Move a unit to another location.

    Returns the new history entry and the number of the pallet the unit
    was put on (entering RMA) or taken off (leaving RMA), if any.
    """
    note = (note or "").strip()
    if not to_location_id or not note:
        raise InvalidInputError("to_location_id and note are required")

    unit = await lock_unit(db, service_tag)
    target = await get_location(db, to_location_id)
    current = await get_location(db, unit.location_id)

    holding = await pallets.pallet_holding(db, unit.id)
    if holding is not None and holding.locked:
        raise InvalidStateError(
            f"Unit {unit.service_tag} is on locked pallet {holding.pallet_number}"
        )

    pallet_number = None
    if target.is_rma:
        if unit.factory_id is None or unit.part_number_id is None:
            raise InvalidInputError(
                "Cannot move to an RMA location because factory or part number "
                "is missing. Update PPID first."
            )
        if holding is None:
            pallet = await pallets.assign_unit_to_open_pallet(db, unit, actor_id)
            pallet_number = pallet.pallet_number
            note = f"{note} - added to {pallet_number}"
    elif current.is_rma:
        pallet = await pallets.detach_unit_from_open_pallet(db, unit)
        if pallet is not None:
            pallet_number = pallet.pallet_number

    entry = await location_history.append(db, unit, target.id, actor_id, note)
    await log_activity(
        db, actor_id,
        action="moved",
        entity_type="unit",
        entity_id=unit.id,
        entity_code=unit.service_tag,
        summary=f"Moved {unit.service_tag} from {current.name} to {target.name}",
        details={"pallet_number": pallet_number} if pallet_number else None,
    )
    return entry, pallet_number


async def undo_last_location(
    db: AsyncSession, service_tag: str, actor_id: str
) -> int:
    """Undo the unit's newest history entry; returns the rewound location id.

    Pallet membership follows the rewind the same way it follows a
    forward move: rewinding out of RMA takes the unit off its pallet,
    rewinding into RMA puts it back on one.
    """
    unit = await lock_unit(db, service_tag)
    current = await get_location(db, unit.location_id)

    holding = await pallets.pallet_holding(db, unit.id)
    if holding is not None and holding.locked:
        raise InvalidStateError(
            f"Unit {unit.service_tag} is on locked pallet {holding.pallet_number}"
        )

    new_location_id = await location_history.undo_last(db, unit, actor_id)
    target = await get_location(db, new_location_id)

    if target.is_rma and holding is None and unit.factory_id and unit.part_number_id:
        await pallets.assign_unit_to_open_pallet(db, unit, actor_id)
    elif current.is_rma and not target.is_rma:
        await pallets.detach_unit_from_open_pallet(db, unit)

    await log_activity(
        db, actor_id,
        action="undo",
        entity_type="unit",
        entity_id=unit.id,
        entity_code=unit.service_tag,
        summary=f"Undid last move of {unit.service_tag}; back at {target.name}",
    )
    return new_location_id


@cached(ttl=settings.snapshot_cache_ttl, prefix="snapshot")
async def location_snapshot(
    *,
    _db: AsyncSession,
    as_of: datetime,
    locations: list[str] | None = None,
    include_note: bool = False,
) -> list[dict]:
    """Where every unit was at `as_of`. Cached; call `__wrapped__` to bypass."""
    return await location_history.snapshot_at(_db, as_of, locations, include_note)
