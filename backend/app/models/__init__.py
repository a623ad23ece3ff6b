"""Aggregate model imports for Alembic auto-detection."""

from app.models.user import User  # noqa: F401
from app.models.factory import Factory, PartNumber  # noqa: F401
from app.models.location import Location, LocationCategory  # noqa: F401
from app.models.unit import Unit  # noqa: F401
from app.models.location_history import LocationHistoryEntry  # noqa: F401
from app.models.pallet import (  # noqa: F401
    LockInfo,
    Pallet,
    PalletMembership,
    PalletSequence,
)
from app.models.activity_log import ActivityLog  # noqa: F401
