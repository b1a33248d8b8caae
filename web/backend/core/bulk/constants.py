"""Fixed constants of the bulk action pipeline."""
from enum import Enum


class BulkActionStatus(str, Enum):
    """Lifecycle of an action record."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class EntityStatus(str, Enum):
    """Stored status of one entity work item."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Outcome(str, Enum):
    """Processor-side outcome of one handler invocation."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @property
    def entity_status(self) -> EntityStatus:
        return _OUTCOME_TO_ENTITY_STATUS[self]


_OUTCOME_TO_ENTITY_STATUS = {
    Outcome.SUCCESS: EntityStatus.PROCESSED,
    Outcome.FAILURE: EntityStatus.FAILED,
    Outcome.SKIPPED: EntityStatus.SKIPPED,
}


class ActionType(str, Enum):
    UPDATE = "bulk-update"


DEFAULT_ACCOUNT_ID = "default"

# Queue
PROCESS_ACTION_TOPIC = "process-action"
QUEUE_RETRY_ATTEMPTS = 3
QUEUE_BACKOFF_DELAY_MS = 2000

# Batch processing
PROCESSING_BATCH_SIZE = 100
STATS_FLUSH_EVERY = 10

# CSV ingestion
CSV_COLUMNS = ("id", "name", "email", "age", "status")
