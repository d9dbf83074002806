"""Taskboard exception hierarchy.

Callers of the persistence core see exactly one of:
  - success
  - InvalidOperation   (validation: the request can never succeed as given)
  - PositionConflict   (stale ordering view: re-read, then retry)
  - ServiceDegraded    (current service posture refuses the operation)
  - PersistenceFailure (classified storage failure, retries exhausted or
                        not retryable)

StorageError is what backends raise; it is classified and wrapped into
PersistenceFailure by the resilient executor before reaching callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .enums import DegradationMode, ItemKind
    from .models import ClassifiedError


class TaskboardError(Exception):
    """Base class for every error raised by the persistence core."""


class StorageError(TaskboardError):
    """A storage-layer failure with an optional structured code.

    ``code`` uses the backend-neutral vocabulary understood by the
    classifier (``connection_failed``, ``timeout``, ``constraint_violation``,
    ``not_found``, ``permission_denied``, ``transaction_failed``).
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.meta = meta or {}


class InvalidOperation(TaskboardError):
    """The requested mutation is invalid and was not attempted."""


class PositionConflict(TaskboardError):
    """An ordering mutation's assumed prior state no longer holds."""

    def __init__(
        self,
        kind: ItemKind | str,
        parent_id: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.kind = kind
        self.parent_id = parent_id
        self.expected = expected
        self.actual = actual
        self.reason = reason
        detail = reason or f"expected version {expected}, found {actual}"
        super().__init__(
            f"Position conflict on {kind} parent {parent_id}: {detail}. "
            "Re-read and try again."
        )


class ServiceDegraded(TaskboardError):
    """The current degradation mode does not permit this operation."""

    def __init__(self, mode: DegradationMode, operation: str) -> None:
        self.mode = mode
        self.operation = operation
        super().__init__(f"{operation} unavailable while service is in {mode} mode")


# Errors that describe the request rather than storage; never classified
# by message and never retried.
DOMAIN_ERRORS = (InvalidOperation, PositionConflict, ServiceDegraded)


class PersistenceFailure(TaskboardError):
    """A final storage failure, already classified."""

    def __init__(self, error: ClassifiedError, *, attempts: int = 1) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(f"{error.kind}: {error.message}")

    @property
    def kind(self):
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable
