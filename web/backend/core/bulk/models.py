"""Domain records of the bulk action pipeline."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from web.backend.core.bulk.constants import (
    DEFAULT_ACCOUNT_ID,
    BulkActionStatus,
    EntityStatus,
    Outcome,
)


@dataclass
class ActionStats:
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def completed(self) -> int:
        return self.success + self.failed + self.skipped

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.SUCCESS:
            self.success += 1
        elif outcome is Outcome.FAILURE:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class BulkAction:
    """One submitted bulk operation."""

    id: str
    action_type: str
    status: BulkActionStatus = BulkActionStatus.PENDING
    config: Dict[str, Any] = field(default_factory=dict)
    stats: ActionStats = field(default_factory=ActionStats)
    scheduled_for: Optional[datetime] = None
    account_id: str = DEFAULT_ACCOUNT_ID
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "BulkAction":
        return cls(
            id=str(row["id"]),
            action_type=row["action_type"],
            status=BulkActionStatus(row["status"]),
            config=row["config"] or {},
            stats=ActionStats(
                total=row["stats_total"],
                success=row["stats_success"],
                failed=row["stats_failed"],
                skipped=row["stats_skipped"],
            ),
            scheduled_for=row["scheduled_for"],
            account_id=row["account_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class BulkActionEntity:
    """One entity work item belonging to an action."""

    id: int
    bulk_action_id: str
    entity_id: str
    entity_data: Dict[str, Any] = field(default_factory=dict)
    status: EntityStatus = EntityStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "BulkActionEntity":
        return cls(
            id=row["id"],
            bulk_action_id=str(row["bulk_action_id"]),
            entity_id=row["entity_id"],
            entity_data=row["entity_data"] or {},
            status=EntityStatus(row["status"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class EntityResult:
    """Outcome reported by a handler for one entity."""

    outcome: Outcome
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> "EntityResult":
        return cls(Outcome.SUCCESS, message)

    @classmethod
    def skipped(cls, message: str) -> "EntityResult":
        return cls(Outcome.SKIPPED, message)

    @classmethod
    def failure(cls, message: str) -> "EntityResult":
        return cls(Outcome.FAILURE, message)


@dataclass(frozen=True)
class EntityContext:
    """Identity of the work item a handler call belongs to."""

    action_id: str
    entity_id: str

    @property
    def owner(self) -> Tuple[str, str]:
        return (self.action_id, self.entity_id)
