"""Pydantic schemas for units (systems) and their location history."""

from datetime import date, datetime

from pydantic import BaseModel, Field


# ── Requests ─────────────────────────────────────────────────

class UnitCreate(BaseModel):
    """Payload for POST /api/v1/systems."""
    service_tag: str = Field(..., min_length=1, max_length=50)
    issue: str | None = None
    location_id: int | None = None
    note: str | None = None


class LocationChangeRequest(BaseModel):
    """Payload for PATCH /api/v1/systems/{service_tag}/location."""
    to_location_id: int | None = None
    note: str | None = None


class IssueUpdate(BaseModel):
    issue: str | None = None


class PPIDUpdate(BaseModel):
    ppid: str


# ── Response ─────────────────────────────────────────────────

class LocationRef(BaseModel):
    id: int
    name: str

    model_config = {"from_attributes": True}


class UnitOut(BaseModel):
    id: str
    service_tag: str
    issue: str | None
    location_id: int
    location: LocationRef
    ppid: str | None
    factory_code: str | None = None
    part_number: str | None = None
    manufactured_date: date | None
    serial: str | None
    rev: str | None
    created_at: datetime

    @classmethod
    def from_unit(cls, unit) -> "UnitOut":
        # part_number on the model is the relationship, not the name
        return cls(
            id=unit.id,
            service_tag=unit.service_tag,
            issue=unit.issue,
            location_id=unit.location_id,
            location=LocationRef.model_validate(unit.location),
            ppid=unit.ppid,
            factory_code=unit.factory.code if unit.factory else None,
            part_number=unit.part_number.name if unit.part_number else None,
            manufactured_date=unit.manufactured_date,
            serial=unit.serial,
            rev=unit.rev,
            created_at=unit.created_at,
        )


class UnitDetail(UnitOut):
    date_created: datetime
    added_by: str | None
    date_modified: datetime | None
    pallet_number: str | None


class LocationChangeResult(BaseModel):
    service_tag: str
    history_id: str
    from_location_id: int | None
    to_location_id: int
    note: str
    changed_at: datetime
    pallet_number: str | None = None


class UndoResult(BaseModel):
    message: str
    new_location_id: int


class HistoryEntryOut(BaseModel):
    id: str
    service_tag: str
    from_location: str | None
    to_location: str
    moved_by: str
    note: str
    changed_at: datetime


class SnapshotRow(BaseModel):
    service_tag: str
    issue: str | None
    location: str
    as_of: datetime
    note: str | None = None
