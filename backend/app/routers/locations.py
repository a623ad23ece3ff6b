"""Location catalog router.

Endpoints:
    GET /api/v1/locations                       All locations
    GET /api/v1/locations/{location_id}         One location
    GET /api/v1/locations/{location_id}/history Ledger entries into or out of it
    GET /api/v1/locations/{location_id}/next    Usual next stations
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.common import PaginatedResponse
from app.schemas.location import LocationOut
from app.schemas.unit import HistoryEntryOut
from app.services import location_history
from app.services.locations import allowed_next_locations, get_location, list_locations
from app.utils.cache import cached
from app.utils.pagination import page_meta, page_window

router = APIRouter()


@router.get("", response_model=list[LocationOut])
@cached(ttl=600, prefix="locations")
async def get_locations(_db: AsyncSession = Depends(get_db)):
    return [LocationOut.model_validate(loc) for loc in await list_locations(_db)]


@router.get("/{location_id}", response_model=LocationOut)
async def get_location_by_id(location_id: int, db: AsyncSession = Depends(get_db)):
    return await get_location(db, location_id)


@router.get("/{location_id}/history", response_model=PaginatedResponse[HistoryEntryOut])
async def get_location_history(
    location_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    all: bool = False,
    db: AsyncSession = Depends(get_db),
):
    await get_location(db, location_id)
    limit, offset = page_window(page, page_size, all)
    filters = {
        "op": "OR",
        "conditions": [
            {"field": "from_location_id", "op": "=", "values": [location_id]},
            {"field": "to_location_id", "op": "=", "values": [location_id]},
        ],
    }
    rows, total = await location_history.list_history(
        db, filters, "changed_at", "desc", limit, offset
    )
    return PaginatedResponse[HistoryEntryOut](
        items=rows, **page_meta(page, page_size, all, total)
    )


@router.get("/{location_id}/next", response_model=list[LocationOut])
async def get_next_locations(location_id: int, db: AsyncSession = Depends(get_db)):
    location = await get_location(db, location_id)
    return await allowed_next_locations(db, location)
