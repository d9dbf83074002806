"""Per-call retry policy: exponential backoff with jitter, bounded.

Only CONNECTION_FAILED and TIMEOUT failures are ever retried, and only when
the classifier also marked them retryable. On give-up the ORIGINAL failure
is re-raised so callers can still classify it themselves. Domain errors
(InvalidOperation, PositionConflict, ServiceDegraded) are re-raised at once
without classification.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from taskboard.shared.enums import (
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    RETRY_DELAY_CAP,
    RETRY_JITTER_RATIO,
    RETRYABLE_KINDS,
)
from taskboard.shared.errors import DOMAIN_ERRORS
from taskboard.shared.models import ClassifiedError

from .classifier import ErrorClassifier, classify

logger = logging.getLogger("taskboard.retry")

T = TypeVar("T")


def should_retry(error: ClassifiedError) -> bool:
    """Double gate: the retryable flag AND a transient kind."""
    return error.retryable and error.kind in RETRYABLE_KINDS


def retry_delay(
    attempt: int,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    *,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-indexed).

    base * 2^(attempt-1), plus up to 10% jitter, capped at 30s.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    exponential = base_delay * (2 ** (attempt - 1))
    jitter = (rng or random).uniform(0, RETRY_JITTER_RATIO * exponential)
    return min(exponential + jitter, RETRY_DELAY_CAP)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    *,
    classifier: ErrorClassifier | None = None,
    deadline: float | None = None,
    operation_name: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times.

    ``deadline`` is an absolute ``loop.time()``; a backoff that would end
    past it is skipped and the last failure raised instead. Cancelling the
    calling task during a backoff aborts the loop with CancelledError.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    classify_fn = classifier.classify if classifier is not None else classify
    loop = asyncio.get_running_loop()
    name = operation_name or getattr(operation, "__name__", "operation")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except DOMAIN_ERRORS:
            raise
        except Exception as exc:
            error = classify_fn(exc, operation=name)
            if not should_retry(error) or attempt >= max_attempts:
                raise
            delay = retry_delay(attempt, base_delay)
            if deadline is not None and loop.time() + delay > deadline:
                logger.warning(
                    "%s failed (%s); deadline leaves no room for retry %d/%d",
                    name, error.kind, attempt + 1, max_attempts,
                )
                raise
            logger.warning(
                "%s failed (%s). Retry %d/%d in %.2fs.",
                name, error.kind, attempt + 1, max_attempts, delay,
            )
        await sleep(delay)
