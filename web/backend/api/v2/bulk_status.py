"""Bulk action status endpoints: filtered listing, summary, entity pages."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from web.backend.api.deps import get_bulk_service, get_stats_service
from web.backend.api.v2.bulk_actions import paginate, raise_for_bulk_error
from web.backend.core.bulk.exceptions import BulkActionError
from web.backend.core.bulk.service import BulkActionService
from web.backend.core.bulk.stats import StatsService
from web.backend.core.rate_limit import bulk_limit
from web.backend.schemas.bulk import (
    BulkActionEntityResponse,
    BulkActionResponse,
    StatusSummaryResponse,
)
from web.backend.schemas.common import PaginatedResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=PaginatedResponse[BulkActionResponse])
@bulk_limit
async def get_actions_by_status(
    request: Request,
    status: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None, alias="accountId"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    service: BulkActionService = Depends(get_bulk_service),
):
    actions, total = await service.get_all_actions(status, account_id, page, per_page)
    return paginate([BulkActionResponse.from_action(a) for a in actions], total, page, per_page)


@router.get("/summary", response_model=StatusSummaryResponse)
@bulk_limit
async def get_status_summary(
    request: Request,
    account_id: Optional[str] = Query(None, alias="accountId"),
    stats_service: StatsService = Depends(get_stats_service),
):
    """Number of actions in each status."""
    return await stats_service.status_summary(account_id)


@router.get("/{action_id}/entities", response_model=PaginatedResponse[BulkActionEntityResponse])
@bulk_limit
async def get_action_entities(
    request: Request,
    action_id: str,
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    service: BulkActionService = Depends(get_bulk_service),
):
    """Entities of one action, optionally filtered by entity status."""
    try:
        entities, total = await service.list_action_entities(action_id, status, page, limit)
    except BulkActionError as e:
        raise_for_bulk_error(e)
    return paginate([BulkActionEntityResponse.from_entity(e) for e in entities], total, page, limit)
