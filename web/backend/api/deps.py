"""API dependencies for the bulk action endpoints."""
import logging
from typing import Optional

from fastapi import Header, Request

from web.backend.core.bulk.constants import DEFAULT_ACCOUNT_ID
from web.backend.core.bulk.notifications import ActionNotifier, notifier
from web.backend.core.bulk.runtime import BulkRuntime
from web.backend.core.bulk.service import BulkActionService
from web.backend.core.bulk.stats import StatsService
from web.backend.core.errors import api_error, E

logger = logging.getLogger(__name__)


def get_account_id(
    x_account_id: Optional[str] = Header(default=None, alias="X-Account-Id"),
) -> str:
    """Tenant of the request; missing or blank header means the default account."""
    if x_account_id and x_account_id.strip():
        return x_account_id.strip()
    return DEFAULT_ACCOUNT_ID


def get_runtime(request: Request) -> BulkRuntime:
    runtime = getattr(request.app.state, "bulk", None)
    if runtime is None:
        raise api_error(503, E.DB_UNAVAILABLE)
    return runtime


def get_bulk_service(request: Request) -> BulkActionService:
    return get_runtime(request).service


def get_stats_service(request: Request) -> StatsService:
    return get_runtime(request).stats


def get_notifier() -> ActionNotifier:
    return notifier


def get_account_filter(
    x_account_id: Optional[str] = Header(default=None, alias="X-Account-Id"),
) -> Optional[str]:
    """Account to filter listings by; None lists every account."""
    if x_account_id and x_account_id.strip():
        return x_account_id.strip()
    return None
