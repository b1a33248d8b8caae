"""API v2 routers."""
from web.backend.api.v2 import bulk_actions, bulk_status, websocket

__all__ = ["bulk_actions", "bulk_status", "websocket"]
