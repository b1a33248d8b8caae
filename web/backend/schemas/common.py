"""Common schemas for the bulk action API."""
from typing import Generic, List, TypeVar, Optional
from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Paginated response wrapper."""

    items: List[T]
    total: int
    page: int
    per_page: int
    pages: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: Optional[str] = None
    services: Optional[dict] = None
