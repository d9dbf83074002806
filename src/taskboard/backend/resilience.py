"""Resilience context — the injectable home of process-wide state.

One ResilienceContext is built at process start (see backend.app lifespan)
and handed to everything that talks to storage. Tests build as many
independent contexts as they like.

The executor is the seam where the pieces meet:

    operation ─▶ with_retry ─▶ success
                     │
                     └─ final failure ─▶ classify ─▶ degradation.on_failure
                                              │
                                              └─ CONNECTION_FAILED ─▶ recovery (background)

Domain errors (InvalidOperation, PositionConflict, ServiceDegraded) pass
straight through: they describe the request, not the storage layer.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from taskboard.shared.enums import DegradationMode, ErrorKind, HealthStatus, RecoveryState
from taskboard.shared.errors import DOMAIN_ERRORS, PersistenceFailure
from taskboard.shared.models import HealthReport
from taskboard.shared.storage import StorageBackend

from .classifier import ErrorClassifier, log_classified
from .config import ResilienceSettings
from .degradation import DegradationController
from .recovery import ConnectionRecoveryMonitor
from .retry import with_retry

logger = logging.getLogger("taskboard.resilience")

T = TypeVar("T")


class ResilienceContext:
    """Classifier, recovery session and degradation state for one process."""

    def __init__(
        self,
        storage: StorageBackend,
        *,
        settings: ResilienceSettings | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or ResilienceSettings()
        self.storage = storage
        self.classifier = classifier or ErrorClassifier()
        self.degradation = DegradationController()
        self.recovery = ConnectionRecoveryMonitor(
            storage,
            max_attempts=self.settings.recovery_max_attempts,
            settle_delay=self.settings.recovery_settle_delay,
            sleep=sleep,
        )
        self.executor = ResilientExecutor(self, sleep=sleep)
        self._recovery_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Recovery orchestration
    # ------------------------------------------------------------------

    async def recover(self) -> bool:
        """Run one recovery attempt; restore NORMAL posture on success."""
        recovered = await self.recovery.attempt_recovery()
        if recovered:
            self.degradation.restore()
        return recovered

    def request_recovery(self) -> asyncio.Task | None:
        """Schedule a background recovery attempt unless one cannot start."""
        if self.recovery.state is not RecoveryState.IDLE:
            return None

        def _log_task_exception(t: asyncio.Task) -> None:
            self._recovery_tasks.discard(t)
            if not t.cancelled() and t.exception():
                logger.warning("Background recovery failed: %s", t.exception())

        task = asyncio.create_task(self.recover())
        self._recovery_tasks.add(task)
        task.add_done_callback(_log_task_exception)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background recovery attempts."""
        while self._recovery_tasks:
            pending = list(self._recovery_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._recovery_tasks.difference_update(pending)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> HealthReport:
        """Probe storage and summarise the current posture."""
        error: str | None = None
        try:
            await self.storage.probe()
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        mode = self.degradation.mode
        if error is not None:
            status = HealthStatus.UNHEALTHY
        elif mode is not DegradationMode.NORMAL:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return HealthReport(
            status=status,
            mode=mode,
            recovery=self.recovery.status(),
            error=error,
            timestamp=datetime.now(timezone.utc),
        )


class ResilientExecutor:
    """Runs storage operations under retry, classification and degradation."""

    def __init__(
        self,
        context: ResilienceContext,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._context = context
        self._sleep = sleep

    async def run(
        self,
        operation_name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        deadline: float | None = None,
    ) -> T:
        ctx = self._context
        attempts = 0

        async def _counted() -> T:
            nonlocal attempts
            attempts += 1
            return await operation()

        try:
            return await with_retry(
                _counted,
                ctx.settings.max_retry_attempts,
                ctx.settings.retry_base_delay,
                classifier=ctx.classifier,
                deadline=deadline,
                operation_name=operation_name,
                sleep=self._sleep,
            )
        except DOMAIN_ERRORS:
            raise
        except Exception as exc:
            error = ctx.classifier.classify(exc, operation=operation_name)
            log_classified(error, attempts=attempts)
            ctx.degradation.on_failure(error)
            if error.kind is ErrorKind.CONNECTION_FAILED:
                ctx.request_recovery()
            raise PersistenceFailure(error, attempts=attempts) from exc
