"""Systems (units) router — units, their location changes and the history ledger.

Endpoints:
    GET    /api/v1/systems                               List units
    POST   /api/v1/systems                               Register a unit
    GET    /api/v1/systems/snapshot?date=…               Where every unit was at a date
    GET    /api/v1/systems/history                       Ledger listing (filter/sort/page)
    GET    /api/v1/systems/history/{history_id}          One ledger entry
    GET    /api/v1/systems/{service_tag}                 Unit detail
    GET    /api/v1/systems/{service_tag}/history         One unit's ledger, newest first
    PATCH  /api/v1/systems/{service_tag}/location        Move to another location
    DELETE /api/v1/systems/{service_tag}/history/last    Undo the newest move
    PATCH  /api/v1/systems/{service_tag}/issue           Update the issue text
    PATCH  /api/v1/systems/{service_tag}/ppid            Record the PPID
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.deps import get_actor_id
from app.database import get_db, get_session_factory, run_in_transaction
from app.middleware.exceptions import InvalidInputError
from app.schemas.common import PaginatedResponse
from app.schemas.unit import (
    HistoryEntryOut,
    IssueUpdate,
    LocationChangeRequest,
    LocationChangeResult,
    PPIDUpdate,
    SnapshotRow,
    UndoResult,
    UnitCreate,
    UnitDetail,
    UnitOut,
)
from app.services import location_history, units as unit_service
from app.utils.cache import invalidate_cache
from app.utils.filters import parse_filters
from app.utils.pagination import page_meta, page_window

router = APIRouter()


def _parse_instant(raw: str) -> datetime:
    """ISO date or datetime → naive UTC (the store's clock)."""
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        raise InvalidInputError(f"Invalid date: {raw}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ── Units ────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[UnitOut])
async def list_units(
    filters: str | None = Query(None, description="JSON filter tree"),
    sort_by: str = "service_tag",
    sort_order: str = "asc",
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    all: bool = False,
    db: AsyncSession = Depends(get_db),
):
    limit, offset = page_window(page, page_size, all)
    rows, total = await unit_service.list_units(
        db, parse_filters(filters), sort_by, sort_order, limit, offset
    )
    return PaginatedResponse[UnitOut](
        items=[UnitOut.from_unit(u) for u in rows],
        **page_meta(page, page_size, all, total),
    )


@router.post("", response_model=UnitOut, status_code=http_status.HTTP_201_CREATED)
async def create_unit(
    body: UnitCreate,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        unit = await unit_service.create_unit(
            db,
            body.service_tag,
            actor_id,
            issue=body.issue,
            location_id=body.location_id,
            note=body.note,
        )
        return UnitOut.from_unit(unit)

    result = await run_in_transaction(session_factory, op)
    await invalidate_cache("snapshot:*")
    return result


# ── Ledger ───────────────────────────────────────────────────

@router.get("/snapshot", response_model=list[SnapshotRow])
async def location_snapshot(
    date: str = Query(..., description="ISO date or datetime"),
    locations: str | None = Query(None, description="Comma-separated location names"),
    includeNote: bool = False,
    noCache: bool = False,
    db: AsyncSession = Depends(get_db),
):
    as_of = _parse_instant(date)
    names = [n.strip() for n in locations.split(",") if n.strip()] if locations else None

    snapshot = unit_service.location_snapshot
    if noCache:
        snapshot = snapshot.__wrapped__
    return await snapshot(
        _db=db, as_of=as_of, locations=names, include_note=includeNote
    )


@router.get("/history", response_model=PaginatedResponse[HistoryEntryOut])
async def list_history(
    filters: str | None = Query(None, description="JSON filter tree"),
    sort_by: str = "changed_at",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    all: bool = False,
    db: AsyncSession = Depends(get_db),
):
    limit, offset = page_window(page, page_size, all)
    rows, total = await location_history.list_history(
        db, parse_filters(filters), sort_by, sort_order, limit, offset
    )
    return PaginatedResponse[HistoryEntryOut](
        items=rows, **page_meta(page, page_size, all, total)
    )


@router.get("/history/{history_id}", response_model=HistoryEntryOut)
async def get_history_entry(history_id: str, db: AsyncSession = Depends(get_db)):
    return await location_history.get_entry(db, history_id)


# ── Single unit ──────────────────────────────────────────────

@router.get("/{service_tag}", response_model=UnitDetail)
async def get_unit(service_tag: str, db: AsyncSession = Depends(get_db)):
    detail = await unit_service.unit_detail(db, service_tag)
    return UnitDetail(
        **UnitOut.from_unit(detail["unit"]).model_dump(),
        date_created=detail["date_created"],
        added_by=detail["added_by"],
        date_modified=detail["date_modified"],
        pallet_number=detail["pallet_number"],
    )


@router.get("/{service_tag}/history", response_model=list[HistoryEntryOut])
async def get_unit_history(service_tag: str, db: AsyncSession = Depends(get_db)):
    unit = await unit_service.get_unit(db, service_tag)
    return await location_history.list_for_unit(db, unit.id)


@router.patch("/{service_tag}/location", response_model=LocationChangeResult)
async def change_location(
    service_tag: str,
    body: LocationChangeRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        entry, pallet_number = await unit_service.change_location(
            db, service_tag, body.to_location_id, body.note, actor_id
        )
        return LocationChangeResult(
            service_tag=unit_service.normalize_tag(service_tag),
            history_id=entry.id,
            from_location_id=entry.from_location_id,
            to_location_id=entry.to_location_id,
            note=entry.note,
            changed_at=entry.changed_at,
            pallet_number=pallet_number,
        )

    result = await run_in_transaction(session_factory, op)
    await invalidate_cache("snapshot:*")
    return result


@router.delete("/{service_tag}/history/last", response_model=UndoResult)
async def undo_last_location(
    service_tag: str,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        return await unit_service.undo_last_location(db, service_tag, actor_id)

    new_location_id = await run_in_transaction(session_factory, op)
    await invalidate_cache("snapshot:*")
    return UndoResult(
        message="Last history entry deleted, system location rolled back",
        new_location_id=new_location_id,
    )


@router.patch("/{service_tag}/issue", response_model=UnitOut)
async def update_issue(
    service_tag: str,
    body: IssueUpdate,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        unit = await unit_service.update_issue(db, service_tag, body.issue, actor_id)
        return UnitOut.from_unit(unit)

    result = await run_in_transaction(session_factory, op)
    await invalidate_cache("snapshot:*")
    return result


@router.patch("/{service_tag}/ppid", response_model=UnitOut)
async def update_ppid(
    service_tag: str,
    body: PPIDUpdate,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        unit = await unit_service.update_ppid(db, service_tag, body.ppid, actor_id)
        return UnitOut.from_unit(unit)

    return await run_in_transaction(session_factory, op)
