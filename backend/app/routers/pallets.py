"""Pallet router.

Endpoints:
    POST   /api/v1/pallets                          Create an open pallet
    GET    /api/v1/pallets                          List pallets with their units
    GET    /api/v1/pallets/{pallet_number}          Single pallet with its units
    PATCH  /api/v1/pallets/{pallet_number}/lock     Lock / unlock
    POST   /api/v1/pallets/move                     Move a unit between pallets
    POST   /api/v1/pallets/{pallet_number}/release  Release with a DOA number
    DELETE /api/v1/pallets/{pallet_number}          Delete an empty open pallet (admin)

Mutations run through run_in_transaction(); the services raise domain
errors which the registered exception handlers render.
"""

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.deps import get_actor_id, require_admin
from app.database import get_db, get_session_factory, run_in_transaction
from app.models.user import User
from app.schemas.common import MessageResponse, PaginatedResponse
from app.schemas.pallet import (
    PalletCreate,
    PalletLockRequest,
    PalletMoveRequest,
    PalletMoveResult,
    PalletOut,
    PalletReleaseRequest,
)
from app.services import pallets as pallet_service
from app.services import units as unit_service
from app.services.transfers import move_unit
from app.utils.filters import parse_filters
from app.utils.pagination import page_meta, page_window

router = APIRouter()


# ── Create ───────────────────────────────────────────────────

@router.post("", response_model=PalletOut, status_code=http_status.HTTP_201_CREATED)
async def create_pallet(
    body: PalletCreate,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        pallet = await pallet_service.create_pallet(
            db, body.part_number.strip(), body.factory_code.strip(), actor_id
        )
        return PalletOut.build(pallet)

    return await run_in_transaction(session_factory, op)


# ── List / detail ────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[PalletOut])
async def list_pallets(
    filters: str | None = Query(None, description="JSON filter tree"),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    all: bool = False,
    db: AsyncSession = Depends(get_db),
):
    limit, offset = page_window(page, page_size, all)
    rows, total = await pallet_service.list_pallets(
        db, parse_filters(filters), sort_by, sort_order, limit, offset
    )
    return PaginatedResponse[PalletOut](
        items=[PalletOut.build(p, members) for p, members in rows],
        **page_meta(page, page_size, all, total),
    )


@router.get("/{pallet_number}", response_model=PalletOut)
async def get_pallet(pallet_number: str, db: AsyncSession = Depends(get_db)):
    pallet, members = await pallet_service.get_pallet(db, pallet_number)
    return PalletOut.build(pallet, members)


# ── Lifecycle ────────────────────────────────────────────────

@router.patch("/{pallet_number}/lock", response_model=PalletOut)
async def set_pallet_lock(
    pallet_number: str,
    body: PalletLockRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        pallet = await pallet_service.set_pallet_lock(
            db, pallet_number, body.locked, actor_id
        )
        return PalletOut.build(pallet, await pallet_service.snapshot(db, pallet))

    return await run_in_transaction(session_factory, op)


@router.post("/move", response_model=PalletMoveResult)
async def move_pallet_member(
    body: PalletMoveRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        source, target = await move_unit(
            db,
            body.service_tag,
            body.from_pallet_number,
            body.to_pallet_number,
            actor_id,
        )
        return PalletMoveResult(
            service_tag=unit_service.normalize_tag(body.service_tag),
            from_pallet=PalletOut.build(source, await pallet_service.snapshot(db, source)),
            to_pallet=PalletOut.build(target, await pallet_service.snapshot(db, target)),
        )

    return await run_in_transaction(session_factory, op)


@router.post("/{pallet_number}/release", response_model=PalletOut)
async def release_pallet(
    pallet_number: str,
    body: PalletReleaseRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor_id: str = Depends(get_actor_id),
):
    async def op(db: AsyncSession):
        pallet = await pallet_service.release_pallet(
            db, pallet_number, body.doa_number, actor_id
        )
        return PalletOut.build(pallet, await pallet_service.snapshot(db, pallet))

    return await run_in_transaction(session_factory, op)


@router.delete("/{pallet_number}", response_model=MessageResponse)
async def delete_pallet(
    pallet_number: str,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    admin: User = Depends(require_admin),
):
    async def op(db: AsyncSession):
        await pallet_service.delete_pallet(db, pallet_number, admin.id)

    await run_in_transaction(session_factory, op)
    return MessageResponse(message=f"Pallet {pallet_number} deleted")
