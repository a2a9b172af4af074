"""Bounded retry with exponential backoff for calls to external systems."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .exceptions import InternalError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a transient failure is retried."""

    max_attempts: int = 4
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the ``attempt``-th failure (1-based)."""

        if self.backoff_seconds <= 0:
            return 0.0
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


def call_with_retry(
    operation: Callable[[], T],
    *,
    description: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying :class:`TransientError` up to the policy bound.

    Any other exception propagates on the first occurrence. When every
    attempt fails transiently an :class:`InternalError` is raised.
    """

    attempts = max(1, policy.max_attempts)
    last_error: Optional[TransientError] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientError as exc:
            last_error = exc
            logger.warning(
                "Transient failure during %s",
                description,
                extra={
                    "operation": description,
                    "retry_attempt": attempt,
                    "retry_attempts": attempts,
                    "error_code": exc.code,
                },
            )
            if attempt >= attempts:
                break
            delay = policy.delay_for(attempt)
            if delay > 0:
                sleep(delay)

    raise InternalError(
        code="retries_exhausted",
        message=f"{description} failed after {attempts} attempts; retry with the same idempotency key",
        detail={"operation": description, "retryable": True},
    ) from last_error


__all__ = ["RetryPolicy", "call_with_retry"]
