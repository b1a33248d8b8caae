"""Error taxonomy of the bulk action pipeline."""


class BulkActionError(Exception):
    """Base class for pipeline errors."""


class UnsupportedActionType(BulkActionError):
    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"Unsupported action type: {action_type}")


class InvalidPayload(BulkActionError):
    """Handler validation rejected the request; nothing was persisted."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid payload: {reason}")


class ActionNotFound(BulkActionError):
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Bulk action not found: {action_id}")


class EntityProcessingFailure(BulkActionError):
    """A handler could not process one entity.

    Caught by the batch processor and recorded as a failure outcome.
    """

    def __init__(self, entity_id: str, message: str):
        self.entity_id = entity_id
        self.message = message
        super().__init__(message)


class SchedulingRaceFault(BulkActionError):
    """A live job already exists for the action."""

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action {action_id} is already enqueued")
