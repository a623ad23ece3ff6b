"""Location catalog — the fixed set of pipeline stations.

Locations are seeded (migration 0001 / `python -m app.cli seed-locations`)
and never edited through the API.  The next-location graph below is the
floor procedure shown to operators; it is informational and the ledger
itself accepts any known location.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ResourceNotFoundError
from app.models.location import Location, LocationCategory

# (id, name, category); ids are referenced by existing history rows
DEFAULT_LOCATIONS: list[tuple[int, str, LocationCategory]] = [
    (1, "Processed", LocationCategory.INTAKE),
    (2, "In Debug - Wistron", LocationCategory.DEBUG),
    (3, "Pending Parts", LocationCategory.PENDING),
    (4, "In Debug - Nvidia", LocationCategory.DEBUG),
    (5, "In L10", LocationCategory.L10),
    (6, "RMA VID", LocationCategory.RMA),
    (7, "RMA PID", LocationCategory.RMA),
    (8, "RMA CID", LocationCategory.RMA),
    (9, "Sent to L11", LocationCategory.SHIPPED),
]

NEXT_LOCATIONS: dict[str, list[str]] = {
    "Processed": ["In Debug - Wistron"],
    "In Debug - Wistron": [
        "In L10", "Pending Parts", "In Debug - Nvidia", "In Debug - Wistron",
    ],
    "Pending Parts": ["In Debug - Wistron"],
    "In Debug - Nvidia": ["In Debug - Wistron"],
    "In L10": [
        "In Debug - Wistron", "RMA VID", "RMA PID", "RMA CID", "Sent to L11",
    ],
}


async def list_locations(db: AsyncSession) -> list[Location]:
    result = await db.execute(select(Location).order_by(Location.id))
    return list(result.scalars().all())


async def get_location(db: AsyncSession, location_id: int) -> Location:
    location = await db.get(Location, location_id)
    if location is None:
        raise ResourceNotFoundError("Location", location_id)
    return location


async def intake_location(db: AsyncSession) -> Location:
    """The location new units start at."""
    result = await db.execute(
        select(Location)
        .where(Location.category == LocationCategory.INTAKE)
        .order_by(Location.id)
        .limit(1)
    )
    location = result.scalar_one_or_none()
    if location is None:
        raise ResourceNotFoundError("Location", "intake")
    return location


async def allowed_next_locations(db: AsyncSession, location: Location) -> list[Location]:
    names = NEXT_LOCATIONS.get(location.name, [])
    if not names:
        return []
    result = await db.execute(
        select(Location).where(Location.name.in_(names)).order_by(Location.id)
    )
    return list(result.scalars().all())
