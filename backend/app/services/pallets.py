"""Pallet lifecycle — create, lock/unlock, release, delete, snapshot.

States:  open(unlocked) ⇄ open(locked) → released (terminal)

Every mutating function expects to run inside one transaction (see
`app.database.run_in_transaction`) and takes the pallet row lock
(SELECT … FOR UPDATE) before reading the pallet's status, so release and
lock toggles on the same pallet are serialized by the store.

Membership bookkeeping goes through the pallet IntervalLedger; a
pallet's snapshot is always read from it:
  - open pallet      → intervals still open
  - released pallet  → intervals containing `released_at`
"""

import logging
import re
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.middleware.exceptions import (
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from app.models.factory import Factory, PartNumber
from app.models.pallet import (
    PALLET_OPEN,
    PALLET_RELEASED,
    LockInfo,
    Pallet,
    PalletMembership,
)
from app.models.unit import Unit
from app.services.interval_ledger import IntervalLedger
from app.utils.activity import log_activity
from app.utils.filters import build_where, resolve_sort
from app.utils.numbering import generate_pallet_number

logger = logging.getLogger("tracker.pallets")

membership_ledger = IntervalLedger(PalletMembership, "pallet_id", "unit_id")

# One row of a pallet snapshot
Member = tuple[PalletMembership, Unit]

SHAPE_PRIORITY = [
    "star",
    "triangle_up",
    "triangle_right",
    "triangle_left",
    "triangle_down",
    "circle",
    "square",
    "diamond",
    "pentagon",
    "hexagon",
]

PALLET_FILTER_FIELDS = {
    "pallet_number": Pallet.pallet_number,
    "status": Pallet.status,
    "factory": Factory.code,
    "factory_id": Pallet.factory_id,
    "part_number": PartNumber.name,
    "part_number_id": Pallet.part_number_id,
    "doa_number": Pallet.doa_number,
    "locked": Pallet.locked,
    "shape": Pallet.shape,
    "created_at": Pallet.created_at,
    "released_at": Pallet.released_at,
}

PALLET_SORT_FIELDS = {
    "created_at": Pallet.created_at,
    "pallet_number": Pallet.pallet_number,
    "status": Pallet.status,
    "released_at": Pallet.released_at,
    "factory": Factory.code,
    "part_number": PartNumber.name,
}


# ── Lookups ──────────────────────────────────────────────────

async def resolve_scope(
    db: AsyncSession, part_number: str, factory_code: str
) -> tuple[Factory, PartNumber]:
    factory = (
        await db.execute(select(Factory).where(Factory.code == factory_code))
    ).scalar_one_or_none()
    if factory is None:
        raise ResourceNotFoundError("Factory", factory_code)

    dpn = (
        await db.execute(select(PartNumber).where(PartNumber.name == part_number))
    ).scalar_one_or_none()
    if dpn is None:
        raise ResourceNotFoundError("Part number", part_number)
    return factory, dpn


async def find_pallet(db: AsyncSession, pallet_number: str) -> Pallet:
    result = await db.execute(
        select(Pallet).where(Pallet.pallet_number == pallet_number)
    )
    pallet = result.scalar_one_or_none()
    if pallet is None:
        raise ResourceNotFoundError("Pallet", pallet_number)
    return pallet


async def lock_pallet_row(db: AsyncSession, pallet_id: str) -> Pallet:
    """Row-lock a pallet and return its freshly read state."""
    result = await db.execute(
        select(Pallet)
        .where(Pallet.id == pallet_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    pallet = result.scalar_one_or_none()
    if pallet is None:
        raise ResourceNotFoundError("Pallet", pallet_id)
    return pallet


async def lock_pallet(db: AsyncSession, pallet_number: str) -> Pallet:
    pallet = await find_pallet(db, pallet_number)
    return await lock_pallet_row(db, pallet.id)


# ── Snapshots ────────────────────────────────────────────────

def snapshot_as_of(pallet: Pallet) -> datetime | None:
    """The instant a pallet's contents are read at; None = open-ended now."""
    if pallet.status == PALLET_RELEASED:
        return pallet.released_at
    return None


async def snapshot(db: AsyncSession, pallet: Pallet) -> list[Member]:
    """(membership, unit) pairs making up the pallet's contents."""
    result = await db.execute(
        select(PalletMembership, Unit)
        .join(Unit, Unit.id == PalletMembership.unit_id)
        .where(
            PalletMembership.pallet_id == pallet.id,
            membership_ledger.at_clause(snapshot_as_of(pallet)),
        )
        .order_by(PalletMembership.added_at, PalletMembership.id)
    )
    latest: dict[str, Member] = {}
    for membership, unit in result.all():
        latest[unit.id] = (membership, unit)
    return list(latest.values())


async def snapshots_for(
    db: AsyncSession, pallets: list[Pallet]
) -> dict[str, list[Member]]:
    """Snapshots for a page of pallets in one query."""
    if not pallets:
        return {}
    result = await db.execute(
        select(PalletMembership, Unit)
        .join(Unit, Unit.id == PalletMembership.unit_id)
        .join(Pallet, Pallet.id == PalletMembership.pallet_id)
        .where(
            PalletMembership.pallet_id.in_([p.id for p in pallets]),
            or_(
                and_(
                    Pallet.status == PALLET_RELEASED,
                    membership_ledger.active_clause(Pallet.released_at),
                ),
                and_(
                    Pallet.status == PALLET_OPEN,
                    membership_ledger.open_clause(),
                ),
            ),
        )
        .order_by(PalletMembership.added_at, PalletMembership.id)
    )
    grouped: dict[str, dict[str, Member]] = {p.id: {} for p in pallets}
    for membership, unit in result.all():
        grouped[membership.pallet_id][unit.id] = (membership, unit)
    return {pid: list(rows.values()) for pid, rows in grouped.items()}


# ── Queries ──────────────────────────────────────────────────

async def get_pallet(
    db: AsyncSession, pallet_number: str
) -> tuple[Pallet, list[Member]]:
    pallet = await find_pallet(db, pallet_number)
    return pallet, await snapshot(db, pallet)


async def list_pallets(
    db: AsyncSession,
    filters: dict | None = None,
    sort_by: str | None = "created_at",
    sort_order: str | None = "desc",
    limit: int | None = 50,
    offset: int = 0,
) -> tuple[list[tuple[Pallet, list[Member]]], int]:
    """Filtered, sorted, paginated pallets, each with its snapshot."""
    base = (
        select(Pallet)
        .join(Factory, Factory.id == Pallet.factory_id)
        .join(PartNumber, PartNumber.id == Pallet.part_number_id)
    )
    if filters and filters.get("conditions"):
        base = base.where(build_where(filters, PALLET_FILTER_FIELDS))

    total = (
        await db.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0

    stmt = base.order_by(
        resolve_sort(sort_by, sort_order, PALLET_SORT_FIELDS, "created_at"),
        Pallet.id,
    )
    if limit is not None:
        stmt = stmt.limit(limit).offset(offset)
    pallets = list((await db.execute(stmt)).scalars().all())

    members = await snapshots_for(db, pallets)
    return [(p, members[p.id]) for p in pallets], total


# ── Create ───────────────────────────────────────────────────

async def _allocate_shape(db: AsyncSession) -> str:
    """First shape not used by an open pallet, then suffixed variants."""
    result = await db.execute(
        select(Pallet.shape).where(
            Pallet.status == PALLET_OPEN, Pallet.shape.isnot(None)
        )
    )
    in_use = set(result.scalars().all())

    for shape in SHAPE_PRIORITY:
        if shape not in in_use:
            return shape

    next_suffix = {shape: 2 for shape in SHAPE_PRIORITY}
    for used in in_use:
        match = re.match(r"^(.+)-(\d+)$", used)
        if match and match.group(1) in next_suffix:
            base, n = match.group(1), int(match.group(2))
            next_suffix[base] = max(next_suffix[base], n + 1)
    for base in SHAPE_PRIORITY:
        candidate = f"{base}-{next_suffix[base]}"
        if candidate not in in_use:
            return candidate
    return f"{SHAPE_PRIORITY[0]}-2"


async def create_for_scope(
    db: AsyncSession,
    factory: Factory,
    part_number: PartNumber,
    actor_id: str,
) -> Pallet:
    """Insert a new open pallet with the next free number for the scope.

    A number already taken (rows numbered before the counter existed, or a
    concurrent insert) costs one slot and the next one is tried.
    """
    shape = await _allocate_shape(db)
    for attempt in range(1, settings.pallet_number_max_attempts + 1):
        number = await generate_pallet_number(db, factory, part_number)

        taken = await db.scalar(
            select(Pallet.id).where(Pallet.pallet_number == number)
        )
        if taken:
            logger.warning("Pallet number %s already taken (attempt %d)", number, attempt)
            continue

        pallet = Pallet(
            pallet_number=number,
            factory_id=factory.id,
            part_number_id=part_number.id,
            factory=factory,
            part_number=part_number,
            status=PALLET_OPEN,
            shape=shape,
        )
        try:
            async with db.begin_nested():
                db.add(pallet)
        except IntegrityError:
            logger.warning("Pallet number %s lost insert race (attempt %d)", number, attempt)
            continue

        await log_activity(
            db, actor_id,
            action="created",
            entity_type="pallet",
            entity_id=pallet.id,
            entity_code=pallet.pallet_number,
            summary=f"Created pallet {pallet.pallet_number}",
        )
        logger.info("Created pallet %s", pallet.pallet_number)
        return pallet

    raise ConflictError(
        f"Could not allocate a free pallet number for {factory.code}/{part_number.name}",
        details={"factory": factory.code, "part_number": part_number.name},
    )


async def create_pallet(
    db: AsyncSession, part_number: str, factory_code: str, actor_id: str
) -> Pallet:
    factory, dpn = await resolve_scope(db, part_number, factory_code)
    return await create_for_scope(db, factory, dpn, actor_id)


# ── Lock / unlock ────────────────────────────────────────────

async def set_pallet_lock(
    db: AsyncSession, pallet_number: str, desired: bool, actor_id: str
) -> Pallet:
    """Lock or unlock an open pallet. Asking for the current state is a no-op."""
    pallet = await lock_pallet(db, pallet_number)
    if not pallet.is_open:
        raise InvalidStateError(
            f"Pallet {pallet_number} is {pallet.status}; only open pallets can be locked or unlocked"
        )
    if pallet.locked == desired:
        return pallet

    pallet.lock = LockInfo(by=actor_id, at=datetime.utcnow()) if desired else None
    await db.flush()

    await log_activity(
        db, actor_id,
        action="locked" if desired else "unlocked",
        entity_type="pallet",
        entity_id=pallet.id,
        entity_code=pallet.pallet_number,
        summary=f"{'Locked' if desired else 'Unlocked'} pallet {pallet.pallet_number}",
    )
    return pallet


# ── Release ──────────────────────────────────────────────────

async def release_pallet(
    db: AsyncSession, pallet_number: str, doa_number: str | None, actor_id: str
) -> Pallet:
    """Close every open membership and freeze the pallet, at one instant.

    Raises:
        InvalidStateError: pallet not open, or has no units
        InvalidInputError: DOA number missing or too short
        ValidationFailedError: one entry per unit without a PPID
    """
    pallet = await lock_pallet(db, pallet_number)
    if not pallet.is_open:
        raise InvalidStateError(f"Pallet {pallet_number} is already {pallet.status}")

    doa = (doa_number or "").strip()
    if len(doa) < settings.doa_min_length:
        raise InvalidInputError(
            f"DOA number must be at least {settings.doa_min_length} characters",
            details={"doa_number": doa_number},
        )

    members = await snapshot(db, pallet)
    if not members:
        raise InvalidStateError(f"Pallet {pallet_number} is empty")

    missing = [unit for _, unit in members if not unit.has_ppid]
    if missing:
        raise ValidationFailedError(
            f"{len(missing)} unit(s) on {pallet_number} have no PPID",
            failures=[
                {"unit_id": u.id, "service_tag": u.service_tag, "reason": "missing_ppid"}
                for u in missing
            ],
        )

    released_at = datetime.utcnow()
    closed = await membership_ledger.close_all(db, pallet.id, released_at)

    pallet.status = PALLET_RELEASED
    pallet.doa_number = doa
    pallet.released_at = released_at
    pallet.lock = None
    await db.flush()

    await log_activity(
        db, actor_id,
        action="released",
        entity_type="pallet",
        entity_id=pallet.id,
        entity_code=pallet.pallet_number,
        summary=f"Released pallet {pallet.pallet_number} with DOA {doa}",
        details={"units": closed, "doa_number": doa},
    )
    logger.info("Released pallet %s (%d units)", pallet.pallet_number, closed)
    return pallet


# ── Delete ───────────────────────────────────────────────────

async def delete_pallet(db: AsyncSession, pallet_number: str, actor_id: str) -> None:
    """Hard-delete an open pallet that holds no units."""
    pallet = await lock_pallet(db, pallet_number)
    if not pallet.is_open:
        raise InvalidStateError(f"Pallet {pallet_number} is {pallet.status} and cannot be deleted")

    open_count = await membership_ledger.count_open(db, pallet.id)
    if open_count:
        raise ConflictError(
            f"Pallet {pallet_number} still holds {open_count} unit(s)",
            details={"open_memberships": open_count},
        )

    await db.execute(
        delete(PalletMembership).where(PalletMembership.pallet_id == pallet.id)
    )
    await db.delete(pallet)
    await db.flush()

    await log_activity(
        db, actor_id,
        action="deleted",
        entity_type="pallet",
        entity_id=pallet.id,
        entity_code=pallet_number,
        summary=f"Deleted pallet {pallet_number}",
    )


# ── Membership side effects of location changes ─────────────

async def pallet_holding(db: AsyncSession, unit_id: str) -> Pallet | None:
    """Row-lock and return the pallet the unit currently sits on."""
    pallet_id = await membership_ledger.open_owner_of(db, unit_id)
    if pallet_id is None:
        return None
    return await lock_pallet_row(db, pallet_id)


async def assign_unit_to_open_pallet(
    db: AsyncSession, unit: Unit, actor_id: str
) -> Pallet:
    """Put a unit entering RMA on an open pallet for its factory / part number.

    Fills the oldest open, unlocked pallet with spare capacity, or creates
    a new one.  Candidates are re-checked after taking their row lock,
    since a release or lock may have landed in between.
    """
    if unit.factory_id is None or unit.part_number_id is None:
        raise InvalidInputError(
            f"Unit {unit.service_tag} has no factory or part number. Update PPID first."
        )

    open_count = func.count(PalletMembership.id)
    candidates = await db.execute(
        select(Pallet.id)
        .outerjoin(
            PalletMembership,
            and_(
                PalletMembership.pallet_id == Pallet.id,
                membership_ledger.open_clause(),
            ),
        )
        .where(
            Pallet.status == PALLET_OPEN,
            Pallet.locked_at.is_(None),
            Pallet.factory_id == unit.factory_id,
            Pallet.part_number_id == unit.part_number_id,
        )
        .group_by(Pallet.id, Pallet.created_at)
        .having(open_count < settings.pallet_capacity)
        .order_by(Pallet.created_at, Pallet.id)
    )

    pallet = None
    for pallet_id in candidates.scalars().all():
        candidate = await lock_pallet_row(db, pallet_id)
        if (
            candidate.is_open
            and not candidate.locked
            and await membership_ledger.count_open(db, candidate.id) < settings.pallet_capacity
        ):
            pallet = candidate
            break

    if pallet is None:
        factory = await db.get(Factory, unit.factory_id)
        dpn = await db.get(PartNumber, unit.part_number_id)
        pallet = await create_for_scope(db, factory, dpn, actor_id)

    await membership_ledger.open(db, pallet.id, unit.id, datetime.utcnow())
    return pallet


async def detach_unit_from_open_pallet(db: AsyncSession, unit: Unit) -> Pallet | None:
    """Take a unit leaving RMA off its pallet. Returns the pallet, if any."""
    pallet = await pallet_holding(db, unit.id)
    # A release that committed while we waited for the row lock closed it
    if pallet is None or not pallet.is_open:
        return None
    if pallet.locked:
        raise InvalidStateError(
            f"Unit {unit.service_tag} is on locked pallet {pallet.pallet_number}"
        )
    await membership_ledger.close(db, pallet.id, unit.id, datetime.utcnow())
    return pallet
