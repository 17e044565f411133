"""Blocking retry helper for ledger store calls."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .exceptions import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and linear backoff applied to transient storage failures."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff_seconds) * attempt


DEFAULT_RETRY_POLICY = RetryPolicy()


def with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying only :class:`TransientStorageError`.

    Sleeps ``attempt * backoff_seconds`` between attempts. Any other exception
    propagates immediately; the last transient error is re-raised once the
    attempt budget is spent.
    """

    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientStorageError:
            if attempt >= attempts:
                logger.error(
                    "Ledger store unavailable after retries",
                    extra={"retry_attempt": attempt, "retry_attempts": attempts},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient ledger store failure, retrying",
                extra={"retry_attempt": attempt, "retry_attempts": attempts, "retry_delay": delay},
            )
            if delay > 0:
                sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["DEFAULT_RETRY_POLICY", "RetryPolicy", "with_retry"]
