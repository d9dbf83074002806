"""Taskboard shared types — the contract between the persistence layers.

This package is the single source of truth for:
- Enumerations and constants (enums.py)
- Exception hierarchy (errors.py)
- Pydantic data models (models.py)
- StorageBackend protocol (storage.py)
"""

from .enums import (
    DegradationMode,
    ErrorKind,
    HealthStatus,
    ItemKind,
    RecoveryState,
    RemovalPolicy,
    RETRYABLE_KINDS,
)
from .errors import (
    DOMAIN_ERRORS,
    InvalidOperation,
    PersistenceFailure,
    PositionConflict,
    ServiceDegraded,
    StorageError,
    TaskboardError,
)
from .models import (
    BoardRecord,
    ClassifiedError,
    DegradationTransition,
    ErrorResponse,
    HealthReport,
    ItemCreate,
    OrderedItem,
    ParentSnapshot,
    RecoveryStatus,
)
from .storage import StorageBackend, StorageTransaction
