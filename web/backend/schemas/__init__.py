"""Schemas for the bulk action API."""
from web.backend.schemas.common import (
    PaginatedResponse,
    HealthResponse,
)
from web.backend.schemas.bulk import (
    BulkActionCreate,
    BulkActionResponse,
    BulkActionEntityResponse,
    EntityStatsResponse,
    StatusSummaryResponse,
    HandlerInfo,
)

__all__ = [
    # Common
    "PaginatedResponse",
    "HealthResponse",
    # Bulk actions
    "BulkActionCreate",
    "BulkActionResponse",
    "BulkActionEntityResponse",
    "EntityStatsResponse",
    "StatusSummaryResponse",
    "HandlerInfo",
]
