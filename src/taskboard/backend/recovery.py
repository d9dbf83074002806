"""Connection recovery — supervises the storage connection itself.

Separate from per-call retry: a request never waits on a full connection
teardown/rebuild. Recovery runs on demand (usually after the executor sees
CONNECTION_FAILED survive its retry budget) with its own attempt budget
that does not grow with request volume.

    IDLE ──attempt──▶ RECOVERING ──probe ok──▶ IDLE (attempts reset)
                          │
                          └─probe failed──▶ IDLE, or EXHAUSTED once
                                            attempt_count >= max_attempts

EXHAUSTED refuses further attempts until reset().
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Awaitable, Callable

from taskboard.shared.enums import (
    DEFAULT_MAX_RECOVERY_ATTEMPTS,
    DEFAULT_RECOVERY_SETTLE_DELAY,
    RecoveryState,
)
from taskboard.shared.models import RecoveryStatus
from taskboard.shared.storage import StorageBackend

logger = logging.getLogger("taskboard.recovery")


class ConnectionRecoveryMonitor:
    """Bounded-attempt reconnect state machine (the recovery session).

    State transitions are compare-and-set under a lock so concurrent
    callers cannot both start an attempt. The storage I/O itself runs
    outside the lock.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        max_attempts: int = DEFAULT_MAX_RECOVERY_ATTEMPTS,
        settle_delay: float = DEFAULT_RECOVERY_SETTLE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._storage = storage
        self._max_attempts = max_attempts
        self._settle_delay = settle_delay
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = RecoveryState.IDLE
        self._attempt_count = 0
        # Bumped by reset(); an attempt started under an older generation
        # is treated as aborted and may not touch the session.
        self._generation = 0
        self._last_error: str | None = None
        self._last_attempt_at: datetime | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> RecoveryState:
        return self._state

    @property
    def attempt_count(self) -> int:
        return self._attempt_count

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def status(self) -> RecoveryStatus:
        with self._lock:
            return RecoveryStatus(
                state=self._state,
                attempt_count=self._attempt_count,
                max_attempts=self._max_attempts,
                last_error=self._last_error,
                last_attempt_at=self._last_attempt_at,
            )

    async def attempt_recovery(self) -> bool:
        """One reconnect attempt. Never raises; returns True on success."""
        with self._lock:
            if self._state is not RecoveryState.IDLE:
                return False
            self._state = RecoveryState.RECOVERING
            self._attempt_count += 1
            self._last_attempt_at = datetime.now(timezone.utc)
            attempt = self._attempt_count
            generation = self._generation

        logger.info(
            "Attempting storage connection recovery (attempt %d/%d)",
            attempt, self._max_attempts,
        )
        try:
            await self._storage.disconnect()
            await self._sleep(self._settle_delay)
            await self._storage.connect()
            await self._storage.probe()
        except asyncio.CancelledError:
            self._finish(generation, succeeded=False, error="recovery cancelled")
            raise
        except Exception as exc:
            logger.error("Recovery attempt %d failed: %s", attempt, exc)
            self._finish(generation, succeeded=False, error=str(exc))
            return False

        return self._finish(generation, succeeded=True, error=None)

    def reset(self) -> None:
        """Back to IDLE with zero attempts. Aborts any in-flight attempt.

        The aborted attempt's outcome is discarded, but its storage calls are
        not interrupted. A new attempt started right after ``reset()`` may
        overlap the old attempt's ``disconnect()``/``connect()``.
        """
        with self._lock:
            in_flight = self._state is RecoveryState.RECOVERING
            self._state = RecoveryState.IDLE
            self._attempt_count = 0
            self._generation += 1
            self._last_error = None
        if in_flight:
            logger.warning(
                "Recovery session reset while an attempt is in flight; "
                "its storage calls may overlap the next attempt"
            )
        else:
            logger.info("Recovery session reset")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, generation: int, *, succeeded: bool, error: str | None) -> bool:
        with self._lock:
            if generation != self._generation:
                logger.info("Recovery attempt finished after reset; result discarded")
                return False
            if succeeded:
                self._state = RecoveryState.IDLE
                self._attempt_count = 0
                self._last_error = None
                logger.info("Storage connection recovery successful")
                return True
            self._last_error = error
            if self._attempt_count >= self._max_attempts:
                self._state = RecoveryState.EXHAUSTED
                logger.error(
                    "Maximum recovery attempts (%d) reached. Manual intervention required.",
                    self._max_attempts,
                )
            else:
                self._state = RecoveryState.IDLE
            return False
