"""Core module for the bulk actions service."""
from web.backend.core.config import get_web_settings, WebSettings

__all__ = [
    "get_web_settings",
    "WebSettings",
]
