"""Pydantic schemas for the location catalog."""

from pydantic import BaseModel

from app.models.location import LocationCategory


class LocationOut(BaseModel):
    id: int
    name: str
    category: LocationCategory
    is_rma: bool

    model_config = {"from_attributes": True}
