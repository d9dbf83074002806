"""Taskboard Pydantic models — the shared contract between the storage
backends, the resilience components and the ordering manager.

Row-shaped records (BoardRecord, OrderedItem) map one-to-one onto the
storage tables; the remaining models are in-process values describing
failures and service posture.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import (
    DEFAULT_MAX_RECOVERY_ATTEMPTS,
    DegradationMode,
    ErrorKind,
    HealthStatus,
    ItemKind,
    MAX_BOARD_NAME_CHARS,
    MAX_TITLE_CHARS,
    RecoveryState,
)


# ═══════════════════════════════════════════════════════════════════════════
#  STORAGE RECORDS
# ═══════════════════════════════════════════════════════════════════════════

class BoardRecord(BaseModel):
    board_id: str
    name: str = Field(max_length=MAX_BOARD_NAME_CHARS)
    created_at: datetime


class ItemCreate(BaseModel):
    """Input shape for inserting a column or task."""
    title: str = Field(min_length=1, max_length=MAX_TITLE_CHARS)
    data: dict[str, Any] = Field(default_factory=dict)
    item_id: str | None = None                  # generated when omitted


class OrderedItem(BaseModel):
    """A column (parent = board) or a task (parent = column).

    ``position`` is zero-based and dense within ``(kind, parent_id)``.
    """
    item_id: str
    kind: ItemKind
    parent_id: str
    board_id: str
    position: int = Field(ge=0)
    title: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ParentSnapshot(BaseModel):
    """Ordered children of one parent plus the ordering version they were
    read at. Every ordering mutation commits against a snapshot."""
    kind: ItemKind
    parent_id: str
    version: int = 0
    items: list[OrderedItem] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def item_ids(self) -> list[str]:
        return [i.item_id for i in self.items]

    def index_of(self, item_id: str) -> int | None:
        for idx, item in enumerate(self.items):
            if item.item_id == item_id:
                return idx
        return None


# ═══════════════════════════════════════════════════════════════════════════
#  FAILURE CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════

class ClassifiedError(BaseModel):
    """A raw storage failure mapped into the closed ErrorKind taxonomy."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ErrorKind
    message: str
    retryable: bool = False
    context: dict[str, Any] = Field(default_factory=dict)
    # Kept for logging/debugging only, never re-parsed
    original: BaseException | str | None = Field(default=None, exclude=True, repr=False)


# ═══════════════════════════════════════════════════════════════════════════
#  SERVICE POSTURE
# ═══════════════════════════════════════════════════════════════════════════

class RecoveryStatus(BaseModel):
    state: RecoveryState = RecoveryState.IDLE
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_RECOVERY_ATTEMPTS
    last_error: str | None = None
    last_attempt_at: datetime | None = None


class DegradationTransition(BaseModel):
    from_mode: DegradationMode
    to_mode: DegradationMode
    error_kind: ErrorKind | None = None         # None for explicit restore
    at: datetime


class HealthReport(BaseModel):
    status: HealthStatus
    mode: DegradationMode
    recovery: RecoveryStatus
    error: str | None = None
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error shape for the operator API."""
    error: str
    message: str
    status: int
    details: dict[str, Any] | None = None
