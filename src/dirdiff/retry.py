"""Bounded exponential backoff for transport operations."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Retry behaviour for a single operation.

    Attributes:
        max_attempts: Attempts including the first try
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        multiplier: Growth factor between consecutive delays
        jitter: Whether to randomise each delay by +/-25%
    """

    max_attempts: int = 5
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay in seconds after the 0-based ``attempt`` failed."""

        delay = min(self.initial_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.75 + random.random() * 0.5
        return delay


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient ``TransportError`` failures.

    Non-transient errors propagate immediately; the last transient error
    propagates once ``policy.max_attempts`` is exhausted.
    """

    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            result = operation()
        except TransportError as exc:
            if not exc.transient:
                raise
            if attempt + 1 >= attempts:
                logger.warning(f"{name} failed after {attempts} attempt(s): {exc}")
                raise
            delay = policy.delay(attempt)
            logger.warning(f"{name} failed (attempt {attempt + 1}/{attempts}): {exc}; retrying in {delay:.2f}s")
            sleep(delay)
            continue
        if attempt > 0:
            logger.info(f"{name} succeeded after {attempt + 1} attempts")
        return result
    raise AssertionError("unreachable")  # pragma: no cover
