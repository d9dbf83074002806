"""Taskboard enumerations and constants.

Single source of truth for the closed vocabularies shared by the storage
contract, the resilience components and the ordering manager.
"""

from enum import StrEnum


# ---------------------------------------------------------------------------
# Ordered Item Kinds
# ---------------------------------------------------------------------------

class ItemKind(StrEnum):
    COLUMN = "column"      # parent = board
    TASK = "task"          # parent = column

    @property
    def child_kind(self) -> "ItemKind | None":
        """Kind of the items this kind contains, if any."""
        return CHILD_KINDS.get(self)


CHILD_KINDS: dict["ItemKind", ItemKind] = {
    ItemKind.COLUMN: ItemKind.TASK,
}


# ---------------------------------------------------------------------------
# Storage Error Taxonomy
# ---------------------------------------------------------------------------

class ErrorKind(StrEnum):
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    UNKNOWN = "UNKNOWN"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.CONNECTION_FAILED,
    ErrorKind.TIMEOUT,
})

# Canonical message per kind; UNKNOWN keeps the raw failure text
ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.CONNECTION_FAILED: "Database connection failed",
    ErrorKind.TIMEOUT: "Database operation timed out",
    ErrorKind.CONSTRAINT_VIOLATION: "Unique constraint violation",
    ErrorKind.NOT_FOUND: "Record not found",
    ErrorKind.PERMISSION_DENIED: "Database permission denied",
    ErrorKind.TRANSACTION_FAILED: "Database transaction failed",
}


# ---------------------------------------------------------------------------
# Service Posture
# ---------------------------------------------------------------------------

class DegradationMode(StrEnum):
    NORMAL = "normal"
    READ_ONLY = "read_only"
    CACHE_ONLY = "cache_only"
    REDUCED_FEATURES = "reduced_features"


class RecoveryState(StrEnum):
    IDLE = "idle"
    RECOVERING = "recovering"
    EXHAUSTED = "exhausted"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ---------------------------------------------------------------------------
# Removal Policies
# ---------------------------------------------------------------------------

class RemovalPolicy(StrEnum):
    MOVE_CHILDREN = "move"
    DELETE_CHILDREN = "delete"


# ---------------------------------------------------------------------------
# Retry / Recovery Defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0      # seconds
RETRY_DELAY_CAP = 30.0              # seconds
RETRY_JITTER_RATIO = 0.1

DEFAULT_MAX_RECOVERY_ATTEMPTS = 5
DEFAULT_RECOVERY_SETTLE_DELAY = 2.0  # seconds between disconnect and reconnect

MAX_DEGRADATION_HISTORY = 100


# ---------------------------------------------------------------------------
# Field Limits
# ---------------------------------------------------------------------------

MAX_TITLE_CHARS = 255
MAX_BOARD_NAME_CHARS = 100
