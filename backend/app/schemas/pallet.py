"""Pydantic schemas for pallet operations."""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.pallet import Pallet
from app.services.pallets import Member


# ── Requests ─────────────────────────────────────────────────

class PalletCreate(BaseModel):
    """Payload for POST /api/v1/pallets."""
    part_number: str = Field(..., min_length=1, max_length=20)
    factory_code: str = Field(..., min_length=1, max_length=10)


class PalletLockRequest(BaseModel):
    """Payload for PATCH /api/v1/pallets/{pallet_number}/lock."""
    locked: bool


class PalletReleaseRequest(BaseModel):
    """Payload for POST /api/v1/pallets/{pallet_number}/release."""
    doa_number: str | None = None


class PalletMoveRequest(BaseModel):
    """Payload for POST /api/v1/pallets/move."""
    service_tag: str = Field(..., min_length=1)
    from_pallet_number: str = Field(..., min_length=1)
    to_pallet_number: str = Field(..., min_length=1)


# ── Response ─────────────────────────────────────────────────

class PalletUnitOut(BaseModel):
    unit_id: str
    service_tag: str
    ppid: str | None
    added_at: datetime
    removed_at: datetime | None


class PalletOut(BaseModel):
    id: str
    pallet_number: str
    factory_code: str
    part_number: str
    status: str
    locked: bool
    locked_at: datetime | None
    locked_by: str | None
    doa_number: str | None
    released_at: datetime | None
    shape: str | None
    created_at: datetime
    units: list[PalletUnitOut] = []

    @classmethod
    def build(
        cls, pallet: Pallet, members: list[Member] | None = None
    ) -> "PalletOut":
        return cls(
            id=pallet.id,
            pallet_number=pallet.pallet_number,
            factory_code=pallet.factory.code,
            part_number=pallet.part_number.name,
            status=pallet.status,
            locked=pallet.locked,
            locked_at=pallet.locked_at,
            locked_by=pallet.locked_by,
            doa_number=pallet.doa_number,
            released_at=pallet.released_at,
            shape=pallet.shape,
            created_at=pallet.created_at,
            units=[
                PalletUnitOut(
                    unit_id=unit.id,
                    service_tag=unit.service_tag,
                    ppid=unit.ppid,
                    added_at=membership.added_at,
                    removed_at=membership.removed_at,
                )
                for membership, unit in members or []
            ],
        )


class PalletMoveResult(BaseModel):
    service_tag: str
    from_pallet: PalletOut
    to_pallet: PalletOut
