"""Shared response schemas."""

from typing import Generic, List, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a list query."""
    items: List[T]
    total: int
    page: int
    page_size: int
