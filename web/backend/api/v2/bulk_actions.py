"""Bulk action API endpoints: creation, upload, listing and stats."""
import json
import logging
import math
import os
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile

from web.backend.api.deps import (
    get_account_filter,
    get_account_id,
    get_bulk_service,
    get_stats_service,
)
from web.backend.core.bulk.exceptions import (
    ActionNotFound,
    BulkActionError,
    InvalidPayload,
    UnsupportedActionType,
)
from web.backend.core.bulk.service import BulkActionService
from web.backend.core.bulk.stats import StatsService
from web.backend.core.config import get_web_settings
from web.backend.core.errors import api_error, E
from web.backend.core.rate_limit import bulk_limit
from web.backend.schemas.bulk import (
    BulkActionCreate,
    BulkActionResponse,
    EntityStatsResponse,
    HandlerInfo,
)
from web.backend.schemas.common import PaginatedResponse

logger = logging.getLogger(__name__)
router = APIRouter()

CSV_CONTENT_TYPES = frozenset({
    "text/csv",
    "application/csv",
    "application/vnd.ms-excel",
    "text/x-csv",
})
UPLOAD_CHUNK_SIZE = 64 * 1024


def raise_for_bulk_error(e: BulkActionError):
    """Translate a domain error into the API error envelope."""
    if isinstance(e, ActionNotFound):
        raise api_error(404, E.ACTION_NOT_FOUND, str(e))
    if isinstance(e, UnsupportedActionType):
        raise api_error(400, E.UNSUPPORTED_ACTION_TYPE, str(e))
    if isinstance(e, InvalidPayload):
        raise api_error(400, E.INVALID_PAYLOAD, e.reason)
    raise api_error(400, E.ACTION_CREATE_FAILED, str(e))


def paginate(items: list, total: int, page: int, per_page: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def _is_csv(upload: UploadFile) -> bool:
    content_type = (upload.content_type or "").split(";")[0].strip().lower()
    return content_type in CSV_CONTENT_TYPES or (upload.filename or "").lower().endswith(".csv")


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


@router.post("", response_model=BulkActionResponse, status_code=201)
@bulk_limit
async def create_bulk_action(
    request: Request,
    data: BulkActionCreate,
    account_id: str = Depends(get_account_id),
    service: BulkActionService = Depends(get_bulk_service),
):
    """Create a bulk action from an inline entity list."""
    try:
        action = await service.create_bulk_action(
            data.action_type,
            data.to_request(),
            account_id=data.account_id or account_id,
        )
    except BulkActionError as e:
        raise_for_bulk_error(e)
    return BulkActionResponse.from_action(action)


@router.post("/upload", response_model=BulkActionResponse, status_code=201)
@bulk_limit
async def create_bulk_action_from_file(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    action_type: str = Form(..., alias="actionType"),
    fields_to_update: Optional[str] = Form(default=None, alias="fieldsToUpdate"),
    scheduled_for: Optional[str] = Form(default=None, alias="scheduledFor"),
    account_id: str = Depends(get_account_id),
    service: BulkActionService = Depends(get_bulk_service),
):
    """Create a bulk action whose entities come from a CSV upload."""
    if file is None:
        raise api_error(400, E.FILE_REQUIRED)
    if not _is_csv(file):
        raise api_error(
            400, E.INVALID_FILE_TYPE,
            f"Invalid file type. Got {file.content_type}, expected CSV file",
        )
    max_bytes = get_web_settings().upload_max_bytes
    if _upload_size(file) > max_bytes:
        raise api_error(413, E.CONTENT_TOO_LARGE, f"File exceeds {max_bytes} bytes")

    config: dict = {}
    if fields_to_update:
        try:
            config["fieldsToUpdate"] = json.loads(fields_to_update)
        except json.JSONDecodeError:
            raise api_error(400, E.INVALID_PAYLOAD, "fieldsToUpdate must be a JSON object")
    if scheduled_for:
        config["scheduledFor"] = scheduled_for

    try:
        action = await service.create_bulk_action_from_file(
            action_type, _iter_upload(file), config, account_id=account_id,
        )
    except BulkActionError as e:
        raise_for_bulk_error(e)
    finally:
        await file.close()
    return BulkActionResponse.from_action(action)


@router.get("", response_model=PaginatedResponse[BulkActionResponse])
@bulk_limit
async def list_bulk_actions(
    request: Request,
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    account_id: Optional[str] = Depends(get_account_filter),
    service: BulkActionService = Depends(get_bulk_service),
):
    """List bulk actions, newest first. Unknown status values are ignored."""
    actions, total = await service.get_all_actions(status, account_id, page, per_page)
    return paginate([BulkActionResponse.from_action(a) for a in actions], total, page, per_page)


@router.get("/handlers", response_model=List[HandlerInfo])
@bulk_limit
async def list_handlers(
    request: Request,
    service: BulkActionService = Depends(get_bulk_service),
):
    """Registered action types with their config schema."""
    return [
        HandlerInfo(action_type=h.action_type, config_schema=h.describe_config_schema())
        for h in service.registry
    ]


@router.get("/{action_id}", response_model=BulkActionResponse)
@bulk_limit
async def get_bulk_action(
    request: Request,
    action_id: str,
    service: BulkActionService = Depends(get_bulk_service),
):
    try:
        action = await service.get_action_by_id(action_id)
    except BulkActionError as e:
        raise_for_bulk_error(e)
    return BulkActionResponse.from_action(action)


@router.get("/{action_id}/stats", response_model=EntityStatsResponse)
@bulk_limit
async def get_bulk_action_stats(
    request: Request,
    action_id: str,
    service: BulkActionService = Depends(get_bulk_service),
    stats_service: StatsService = Depends(get_stats_service),
):
    """Live entity counts for an action."""
    try:
        await service.get_action_by_id(action_id)
    except BulkActionError as e:
        raise_for_bulk_error(e)
    return await stats_service.get_stats(action_id)
