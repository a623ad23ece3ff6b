"""Location history ledger — the append-only chain of a unit's moves.

Handles:
  - Appending an entry and moving the unit's current location with it
  - Undoing the newest entry (never the first one) and rewinding the unit
  - Ledger queries: per unit, filtered/paginated, single entry
  - Dated snapshots: where every unit was as of a given instant

Invariant kept here: a unit's `location_id` equals the `to_location_id`
of its newest entry.  Entries are strictly ordered by `changed_at`; an
append that lands on the same instant as the previous entry is nudged
forward by one microsecond.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.config import settings
from app.middleware.exceptions import (
    InvalidStateError,
    PermissionDeniedError,
    ResourceNotFoundError,
)
from app.models.location import Location
from app.models.location_history import LocationHistoryEntry
from app.models.unit import Unit
from app.models.user import User
from app.services.locations import get_location
from app.utils.filters import build_where, resolve_sort

logger = logging.getLogger("tracker.history")

FromLocation = aliased(Location)
ToLocation = aliased(Location)

HISTORY_FILTER_FIELDS = {
    "service_tag": Unit.service_tag,
    "from_location_id": LocationHistoryEntry.from_location_id,
    "to_location_id": LocationHistoryEntry.to_location_id,
    "moved_by_id": LocationHistoryEntry.moved_by,
    "changed_at": LocationHistoryEntry.changed_at,
    "note": LocationHistoryEntry.note,
}

HISTORY_SORT_FIELDS = {
    "changed_at": LocationHistoryEntry.changed_at,
    "service_tag": Unit.service_tag,
    "from_location_id": LocationHistoryEntry.from_location_id,
    "to_location_id": LocationHistoryEntry.to_location_id,
    "moved_by": User.username,
}


def _newest_first():
    return (LocationHistoryEntry.changed_at.desc(), LocationHistoryEntry.id.desc())


async def newest_entries(
    db: AsyncSession, unit_id: str, limit: int = 2
) -> list[LocationHistoryEntry]:
    result = await db.execute(
        select(LocationHistoryEntry)
        .where(LocationHistoryEntry.unit_id == unit_id)
        .order_by(*_newest_first())
        .limit(limit)
    )
    return list(result.scalars().all())


# ── Writes ───────────────────────────────────────────────────

async def append(
    db: AsyncSession,
    unit: Unit,
    to_location_id: int,
    actor_id: str,
    note: str,
    at: datetime | None = None,
) -> LocationHistoryEntry:
    """Write the next entry of the unit's chain and move the unit.

    The caller holds the unit row lock.  `from_location_id` is the unit's
    current location, or None when this is the unit's first entry.
    """
    await get_location(db, to_location_id)

    previous = await newest_entries(db, unit.id, limit=1)
    changed_at = at or datetime.utcnow()
    if previous and changed_at <= previous[0].changed_at:
        changed_at = previous[0].changed_at + timedelta(microseconds=1)

    entry = LocationHistoryEntry(
        unit_id=unit.id,
        from_location_id=unit.location_id if previous else None,
        to_location_id=to_location_id,
        moved_by=actor_id,
        note=note,
        changed_at=changed_at,
    )
    db.add(entry)
    unit.location_id = to_location_id
    await db.flush()

    logger.info(
        "Unit %s: location %s -> %s by %s",
        unit.service_tag, entry.from_location_id, to_location_id, actor_id,
    )
    return entry


async def undo_last(db: AsyncSession, unit: Unit, actor_id: str) -> int:
    """Delete the unit's newest entry and rewind its location.

    Allowed for the actor who wrote the entry, or for anyone when the
    entry belongs to the deleted-actor placeholder.  The first entry
    anchors the chain and can never be undone.

    Returns the unit's location id after the rewind.
    """
    entries = await newest_entries(db, unit.id, limit=2)
    if not entries:
        raise InvalidStateError(f"Unit {unit.service_tag} has no history entries")
    if len(entries) == 1:
        raise InvalidStateError("Cannot delete the first history entry")

    newest, remaining = entries
    if newest.moved_by not in (actor_id, settings.deleted_actor_id):
        raise PermissionDeniedError(
            "Only the actor who recorded this entry can undo it"
        )

    await db.delete(newest)
    unit.location_id = remaining.to_location_id
    await db.flush()

    logger.info(
        "Unit %s: undid entry %s, location rewound to %s",
        unit.service_tag, newest.id, remaining.to_location_id,
    )
    return remaining.to_location_id


# ── Reads ────────────────────────────────────────────────────

def _ledger_select():
    return (
        select(
            LocationHistoryEntry.id,
            Unit.service_tag,
            FromLocation.name.label("from_location"),
            ToLocation.name.label("to_location"),
            User.username.label("moved_by"),
            LocationHistoryEntry.note,
            LocationHistoryEntry.changed_at,
        )
        .join(Unit, Unit.id == LocationHistoryEntry.unit_id)
        .outerjoin(FromLocation, FromLocation.id == LocationHistoryEntry.from_location_id)
        .join(ToLocation, ToLocation.id == LocationHistoryEntry.to_location_id)
        .join(User, User.id == LocationHistoryEntry.moved_by)
    )


async def list_for_unit(db: AsyncSession, unit_id: str) -> list[dict]:
    result = await db.execute(
        _ledger_select()
        .where(LocationHistoryEntry.unit_id == unit_id)
        .order_by(*_newest_first())
    )
    return [dict(row._mapping) for row in result.all()]


async def get_entry(db: AsyncSession, entry_id: str) -> dict:
    result = await db.execute(
        _ledger_select().where(LocationHistoryEntry.id == entry_id)
    )
    row = result.one_or_none()
    if row is None:
        raise ResourceNotFoundError("History record", entry_id)
    return dict(row._mapping)


async def list_history(
    db: AsyncSession,
    filters: dict | None = None,
    sort_by: str | None = "changed_at",
    sort_order: str | None = "desc",
    limit: int | None = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Filtered, sorted, paginated ledger. `limit=None` returns everything."""
    base = _ledger_select()
    if filters and filters.get("conditions"):
        base = base.where(build_where(filters, HISTORY_FILTER_FIELDS))

    total = (
        await db.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0

    stmt = base.order_by(
        resolve_sort(sort_by, sort_order, HISTORY_SORT_FIELDS, "changed_at"),
        LocationHistoryEntry.id,
    )
    if limit is not None:
        stmt = stmt.limit(limit).offset(offset)
    result = await db.execute(stmt)
    return [dict(row._mapping) for row in result.all()], total


async def snapshot_at(
    db: AsyncSession,
    as_of: datetime,
    locations: list[str] | None = None,
    include_note: bool = False,
) -> list[dict]:
    """Where every unit was as of `as_of`, from its newest entry at that time."""
    ranked = (
        select(
            LocationHistoryEntry.unit_id,
            LocationHistoryEntry.to_location_id,
            LocationHistoryEntry.changed_at,
            LocationHistoryEntry.note,
            func.row_number()
            .over(
                partition_by=LocationHistoryEntry.unit_id,
                order_by=(
                    LocationHistoryEntry.changed_at.desc(),
                    LocationHistoryEntry.id.desc(),
                ),
            )
            .label("rank"),
        )
        .where(LocationHistoryEntry.changed_at <= as_of)
        .subquery()
    )

    columns = [
        Unit.service_tag,
        Unit.issue,
        Location.name.label("location"),
        ranked.c.changed_at.label("as_of"),
    ]
    if include_note:
        columns.append(ranked.c.note)

    stmt = (
        select(*columns)
        .join(ranked, ranked.c.unit_id == Unit.id)
        .join(Location, Location.id == ranked.c.to_location_id)
        .where(ranked.c.rank == 1)
        .order_by(Unit.service_tag)
    )
    if locations:
        stmt = stmt.where(Location.name.in_(locations))

    result = await db.execute(stmt)
    return [dict(row._mapping) for row in result.all()]
