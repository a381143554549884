"""Custom exceptions for Backroom Press."""

import uuid


class BackroomError(Exception):
    """Base class for Backroom Press errors."""


class NotFoundError(BackroomError):
    """Raised when a referenced entity does not exist."""

    entity = "Entity"

    def __init__(self, entity_id: uuid.UUID | int | str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class ConversationNotFoundError(NotFoundError):
    entity = "Conversation"


class ClusterNotFoundError(NotFoundError):
    entity = "Cluster"


class ArticleNotFoundError(NotFoundError):
    entity = "Article"


class OracleResponseError(BackroomError):
    """Raised when an oracle reply is missing a field or is not numeric."""

    def __init__(self, message: str, raw_content: str | None = None):
        self.raw_content = raw_content
        super().__init__(message)


class RetryExhaustedError(BackroomError):
    """Raised (or returned) when a bounded retry gives up."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Gave up after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class PersistenceError(BackroomError):
    """Raised when a transactional write was rolled back."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        message = f"Failed to {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class SynthesisError(BackroomError):
    """Raised when article generation returns no usable title or content."""
