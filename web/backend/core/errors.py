"""Structured error codes for API responses.

Usage:
    from web.backend.core.errors import api_error, E

    raise api_error(404, E.ACTION_NOT_FOUND)
    raise api_error(400, E.INVALID_PAYLOAD, "fieldsToUpdate is required")
"""
from enum import Enum
from fastapi import HTTPException


class ErrorCode(str, Enum):
    """All API error codes."""

    # ── Bulk actions ──────────────────────────────────────────
    ACTION_NOT_FOUND = "ACTION_NOT_FOUND"
    UNSUPPORTED_ACTION_TYPE = "UNSUPPORTED_ACTION_TYPE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_STATUS = "INVALID_STATUS"
    ACTION_CREATE_FAILED = "ACTION_CREATE_FAILED"

    # ── Uploads ───────────────────────────────────────────────
    FILE_REQUIRED = "FILE_REQUIRED"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    CONTENT_TOO_LARGE = "CONTENT_TOO_LARGE"

    # ── Generic ───────────────────────────────────────────────
    RATE_LIMITED = "RATE_LIMITED"
    DB_UNAVAILABLE = "DB_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Shorthand alias
E = ErrorCode

# Default human-readable messages per code (English fallback)
_DEFAULT_MESSAGES: dict[str, str] = {
    E.ACTION_NOT_FOUND: "Bulk action not found",
    E.UNSUPPORTED_ACTION_TYPE: "Unsupported action type",
    E.INVALID_PAYLOAD: "Invalid payload",
    E.INVALID_STATUS: "Unknown status filter",
    E.ACTION_CREATE_FAILED: "Failed to create bulk action",
    E.FILE_REQUIRED: "No file uploaded",
    E.INVALID_FILE_TYPE: "Only CSV files are allowed",
    E.CONTENT_TOO_LARGE: "Uploaded file is too large",
    E.RATE_LIMITED: "Too many requests",
    E.DB_UNAVAILABLE: "Database not available",
    E.INTERNAL_ERROR: "Internal error",
}


def api_error(
    status_code: int,
    code: ErrorCode,
    detail: str | None = None,
) -> HTTPException:
    """Create an HTTPException with a structured error code.

    Args:
        status_code: HTTP status code (400, 404, 413, etc.)
        code: ErrorCode enum value
        detail: Human-readable message. If None, uses default for the code.

    Returns:
        HTTPException with JSON body {"detail": "...", "code": "ERROR_CODE"}
    """
    message = detail or _DEFAULT_MESSAGES.get(code, code.value)
    return HTTPException(
        status_code=status_code,
        detail={"detail": message, "code": code.value},
    )
