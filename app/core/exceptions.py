from typing import Any, Iterable


class TaskError(Exception):
    """Base class for every error raised by the task layer."""

    code = "task_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskError):
    """Malformed filter, sort or field input. Raised before the store is touched."""

    code = "validation_error"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(TaskError):
    code = "not_found"


class AuthorizationError(TaskError):
    code = "forbidden"


class StoreError(TaskError):
    """
    Transport or transaction failure in the relational store.

    Carries the operation name and the affected ids only; parameter values
    are never part of the message.
    """

    code = "store_error"

    def __init__(self, operation: str, ids: Iterable[str] = ()):
        self.operation = operation
        self.ids = list(ids)
        super().__init__(f"Store operation '{operation}' failed")


class CacheError(TaskError):
    code = "cache_error"
