"""Common schemas used across the application."""

from typing import Generic, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response wrapper.

    Usage:
        response_model=PaginatedResponse[PalletOut]

    Returns:
        {
            "items": [...],
            "total": 150,
            "page": 1,
            "page_size": 50
        }

    With `all=true` the page holds every row and page_size equals total.
    """
    items: list[T]
    total: int
    page: int
    page_size: int


class MessageResponse(BaseModel):
    message: str
