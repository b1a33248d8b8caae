"""Schemas for bulk actions."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from web.backend.core.bulk.models import BulkAction, BulkActionEntity


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BulkActionCreate(_CamelModel):
    """Request to create a bulk action with an inline entity list."""

    action_type: str = Field(..., alias="actionType", min_length=1)
    account_id: Optional[str] = Field(default=None, alias="accountId")
    config: Dict[str, Any] = Field(default_factory=dict)
    # Items need an "id" (or "_id"); every other field goes to the handler as-is
    entities: List[Dict[str, Any]] = Field(default_factory=list)

    def to_request(self) -> Dict[str, Any]:
        return {
            "config": self.config,
            "entities": self.entities,
            "accountId": self.account_id,
        }


class ActionStatsSchema(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0


class BulkActionResponse(_CamelModel):
    id: str
    action_type: str = Field(..., alias="actionType")
    status: str
    scheduled_for: Optional[datetime] = Field(default=None, alias="scheduledFor")
    account_id: str = Field(..., alias="accountId")
    config: Dict[str, Any] = Field(default_factory=dict)
    stats: ActionStatsSchema
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_action(cls, action: BulkAction) -> "BulkActionResponse":
        return cls(
            id=action.id,
            action_type=action.action_type,
            status=action.status.value,
            scheduled_for=action.scheduled_for,
            account_id=action.account_id,
            config=action.config,
            stats=ActionStatsSchema(**action.stats.to_dict()),
            created_at=action.created_at,
            updated_at=action.updated_at,
        )


class BulkActionEntityResponse(_CamelModel):
    id: int
    bulk_action_id: str = Field(..., alias="bulkActionId")
    entity_id: str = Field(..., alias="entityId")
    entity_data: Dict[str, Any] = Field(default_factory=dict, alias="entityData")
    status: str
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_entity(cls, entity: BulkActionEntity) -> "BulkActionEntityResponse":
        return cls(
            id=entity.id,
            bulk_action_id=entity.bulk_action_id,
            entity_id=entity.entity_id,
            entity_data=entity.entity_data,
            status=entity.status.value,
            error_message=entity.error_message,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class EntityStatsResponse(BaseModel):
    """Live per-status entity counts."""

    total: int
    pending: int
    processed: int
    failed: int
    skipped: int


class StatusSummaryResponse(BaseModel):
    pending: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    completed_with_errors: int = 0
    failed: int = 0


class HandlerInfo(_CamelModel):
    action_type: str = Field(..., alias="actionType")
    config_schema: Dict[str, Any] = Field(default_factory=dict, alias="configSchema")
