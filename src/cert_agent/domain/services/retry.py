"""Bounded retry with exponential backoff.

The combinator runs a fixed maximum number of attempts, so a retried CA call
always terminates within one scheduler tick.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from cert_agent.domain.errors import CAError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base: float, cap: float) -> list[float]:
    """Delays slept between consecutive attempts (attempts - 1 entries)."""
    return [min(base * (2 ** i), cap) for i in range(max(attempts - 1, 0))]


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Call `operation` until it succeeds or a non-retryable error occurs.

    Only CAError subclasses flagged ``retryable`` are retried. A
    RateLimitedError waits at least its ``retry_after``; one asking for longer
    than `max_delay` is raised at once so the next tick can try again.

    Args:
        operation: Zero-argument callable to run.
        attempts: Maximum number of calls, including the first.
        base_delay: Delay after the first failure; doubled after each retry.
        max_delay: Upper bound on any single delay.
        sleep: Sleep function (injected in tests).
        description: Label used in log messages.

    Returns:
        The operation's result.

    Raises:
        CAError: The last error once attempts are exhausted, or the first
            non-retryable one.
    """
    delays = backoff_delays(attempts, base_delay, max_delay)

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except CAError as e:
            if not e.retryable or attempt == attempts:
                raise

            delay = delays[attempt - 1]
            if isinstance(e, RateLimitedError) and e.retry_after:
                if e.retry_after > max_delay:
                    logger.warning(
                        f"{description} rate limited for {e.retry_after:.0f}s, "
                        f"longer than the {max_delay:.0f}s retry bound; giving up this tick"
                    )
                    raise
                delay = max(delay, e.retry_after)

            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
