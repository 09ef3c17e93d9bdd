"""Shared list envelope for the admin endpoints."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of a list endpoint plus the unpaged total."""

    items: list[T]
    total: int
    limit: int
    offset: int
