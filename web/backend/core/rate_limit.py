"""Rate limiting configuration for the bulk action API.

Requests are keyed by the ``X-Account-Id`` header so every account gets
its own budget; requests without the header share the default account's
budget. Uses Redis as storage backend when REDIS_URL is configured,
otherwise falls back to in-memory storage.
"""
import logging

from fastapi import Request
from limits.storage import storage_from_string
from limits.strategies import STRATEGIES
from slowapi import Limiter

from web.backend.core.bulk.constants import DEFAULT_ACCOUNT_ID
from web.backend.core.config import get_web_settings

logger = logging.getLogger(__name__)

ACCOUNT_HEADER = "X-Account-Id"

# Default per-account budget, overridden by RATE_LIMIT
RATE_ACCOUNT = "100/minute"


def account_key(request: Request) -> str:
    """Rate-limit key: the caller's account id."""
    account_id = (request.headers.get(ACCOUNT_HEADER) or "").strip()
    return account_id or DEFAULT_ACCOUNT_ID


def account_budget() -> str:
    """Per-account limit, read from settings at request time."""
    return get_web_settings().rate_limit or RATE_ACCOUNT


limiter = Limiter(
    key_func=account_key,
    storage_uri=None,  # in-memory by default, upgraded to Redis in configure_limiter()
)

# One budget per account across all bulk action endpoints
bulk_limit = limiter.shared_limit(account_budget, scope="bulk-actions")


def configure_limiter(redis_url: str | None = None) -> None:
    """Upgrade limiter storage to Redis so the per-account budget is shared
    between processes.

    Called during app startup if REDIS_URL is available.
    """
    if not redis_url:
        return
    try:
        storage = storage_from_string(redis_url)
        limiter._storage_uri = redis_url
        limiter._storage = storage
        limiter._limiter = STRATEGIES[limiter._strategy or "fixed-window"](storage)
        logger.info("Rate limiter upgraded to Redis backend")
    except Exception as e:
        logger.warning("Failed to configure Redis rate limiter: %s", e)
