"""Periodic driver for the certificate agent.

Ticks are scheduled from the previous tick's start, not its end, so a slow
renewal does not push every later check back. A tick that overruns the
interval is followed by the next one immediately. Waiting happens on a
threading.Event so a shutdown request wakes the scheduler at once.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from cert_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Scheduler:
    """Runs a tick callback every `interval` seconds until stopped."""

    def __init__(
        self,
        tick: Callable[[Callable[[], bool]], bool],
        interval: float,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize scheduler.

        Args:
            tick: Callback running one pass. Receives a `should_stop` callable and
                returns True when any domain set failed.
            interval: Seconds between tick starts.
            monotonic: Monotonic clock (injected in tests).
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._tick = tick
        self.interval = interval
        self._monotonic = monotonic
        self.stop_event = threading.Event()
        self.ticks = 0

    def stop(self) -> None:
        """Request shutdown; the running domain set finishes first."""
        self.stop_event.set()

    def next_delay(self, tick_started: float) -> float:
        """Seconds to wait before the tick following one started at `tick_started`."""
        return max(0.0, tick_started + self.interval - self._monotonic())

    def run_once(self) -> bool:
        """Run a single pass.

        Returns:
            True if any domain set ended in the Failed state.
        """
        self.ticks += 1
        return self._tick(self.stop_event.is_set)

    def run_forever(self) -> None:
        """Tick until stop() is called. A tick that raises is logged and the loop goes on."""
        logger.info("scheduler_started", interval_seconds=self.interval)
        while not self.stop_event.is_set():
            started = self._monotonic()
            try:
                failed = self.run_once()
            except Exception:
                logger.exception("tick_failed")
                failed = True
            delay = self.next_delay(started)
            if delay == 0.0 and not self.stop_event.is_set():
                logger.warning("tick_overran_interval", interval_seconds=self.interval)
            logger.debug("tick_finished", failed=failed, next_in_seconds=round(delay, 3))
            self.stop_event.wait(delay)
        logger.info("scheduler_stopped", ticks=self.ticks)
