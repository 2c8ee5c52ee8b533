"""Liveness watchdog for the sync worker."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from .const import DEFAULT_WATCHDOG_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Callable

_LOGGER = logging.getLogger(__name__)


class Watchdog:
    """Detects a worker that stopped signalling progress.

    The worker calls ``feed`` around every potentially slow operation. The
    monitor coroutine checks the last heartbeat four times per timeout and
    counts a missed deadline whenever the heartbeat is older than the timeout.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_WATCHDOG_TIMEOUT,
        on_timeout: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the watchdog.

        Args:
            timeout: Seconds without a heartbeat before a deadline is missed.
            on_timeout: Called each time the monitor detects a missed deadline.
            clock: Monotonic time source.

        """
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._clock = clock
        self._last_feed = clock()
        self._missed_deadlines = 0

    @property
    def timeout(self) -> float:
        """Return the heartbeat timeout in seconds."""
        return self._timeout

    @property
    def missed_deadlines(self) -> int:
        """Return how many deadlines have been missed so far."""
        return self._missed_deadlines

    @property
    def last_feed(self) -> float:
        """Return the clock value of the last heartbeat."""
        return self._last_feed

    def feed(self) -> None:
        """Record a heartbeat."""
        self._last_feed = self._clock()

    def is_expired(self) -> bool:
        """Return True if the last heartbeat is older than the timeout."""
        return self._clock() - self._last_feed > self._timeout

    def record_missed_deadline(self) -> None:
        """Count a deadline missed by the worker itself."""
        self._missed_deadlines += 1
        _LOGGER.warning(
            "Worker missed its deadline (%d missed so far)", self._missed_deadlines
        )

    def check(self) -> bool:
        """Check the heartbeat once.

        Returns:
            True if the heartbeat is fresh, False if a deadline was missed.

        """
        if not self.is_expired():
            return True

        self._missed_deadlines += 1
        _LOGGER.critical(
            "No heartbeat for %.1f seconds (timeout %.1f)",
            self._clock() - self._last_feed,
            self._timeout,
        )
        # Restart the window so one stall is reported once per timeout
        self._last_feed = self._clock()

        if self._on_timeout is not None:
            try:
                self._on_timeout()
            except Exception:
                _LOGGER.exception("Error in watchdog timeout callback")
        return False

    async def async_monitor(self) -> None:
        """Check the heartbeat until cancelled."""
        interval = self._timeout / 4
        self.feed()
        _LOGGER.debug("Watchdog monitoring with %.1f second timeout", self._timeout)
        while True:
            await asyncio.sleep(interval)
            self.check()
