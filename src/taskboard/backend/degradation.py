"""Degradation controller — changes service posture on final failures.

    CONNECTION_FAILED  → CACHE_ONLY        (serve cached reads, reject writes)
    PERMISSION_DENIED  → READ_ONLY
    anything else      → REDUCED_FEATURES  (non-essential features off)

The controller never attempts recovery itself. Returning to NORMAL is an
explicit restore(), triggered after a successful recovery attempt or by an
operator.
"""

from __future__ import annotations

import collections
import logging
import threading
from datetime import datetime, timezone

from taskboard.shared.enums import DegradationMode, ErrorKind, MAX_DEGRADATION_HISTORY
from taskboard.shared.models import ClassifiedError, DegradationTransition

logger = logging.getLogger("taskboard.degradation")

FAILURE_MODES: dict[ErrorKind, DegradationMode] = {
    ErrorKind.CONNECTION_FAILED: DegradationMode.CACHE_ONLY,
    ErrorKind.PERMISSION_DENIED: DegradationMode.READ_ONLY,
}

_WRITABLE_MODES = frozenset({DegradationMode.NORMAL, DegradationMode.REDUCED_FEATURES})


class DegradationController:
    """Holds the process-wide DegradationMode. Thread-safe."""

    def __init__(self, history_size: int = MAX_DEGRADATION_HISTORY) -> None:
        self._lock = threading.Lock()
        self._mode = DegradationMode.NORMAL
        self._history: collections.deque[DegradationTransition] = collections.deque(
            maxlen=history_size
        )

    @property
    def mode(self) -> DegradationMode:
        return self._mode

    @property
    def history(self) -> list[DegradationTransition]:
        with self._lock:
            return list(self._history)

    def on_failure(self, error: ClassifiedError) -> DegradationMode:
        """React to a final (non-retryable or exhausted) failure."""
        target = FAILURE_MODES.get(error.kind, DegradationMode.REDUCED_FEATURES)
        self._transition(target, error.kind)
        return target

    def restore(self) -> None:
        self._transition(DegradationMode.NORMAL, None)

    # ------------------------------------------------------------------
    # Capability queries
    # ------------------------------------------------------------------

    def allows_writes(self) -> bool:
        return self._mode in _WRITABLE_MODES

    def allows_storage_reads(self) -> bool:
        return self._mode is not DegradationMode.CACHE_ONLY

    def allows_non_essential(self) -> bool:
        return self._mode is DegradationMode.NORMAL

    # ------------------------------------------------------------------

    def _transition(self, target: DegradationMode, kind: ErrorKind | None) -> None:
        with self._lock:
            previous = self._mode
            if previous is target:
                return
            self._mode = target
            record = DegradationTransition(
                from_mode=previous,
                to_mode=target,
                error_kind=kind,
                at=datetime.now(timezone.utc),
            )
            self._history.append(record)
        if target is DegradationMode.NORMAL:
            logger.info("Service restored: %s -> %s at %s", previous, target, record.at.isoformat())
        else:
            logger.warning(
                "Service degraded: %s -> %s (kind=%s) at %s",
                previous, target, kind, record.at.isoformat(),
            )
