"""Target session management.

A :class:`Session` is a generation-numbered handle on one driver
connection.  :class:`SessionManager` opens, restarts and closes it;
restart budgets are enforced by the recovery controller, not here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.driver.base import TargetDriver
from src.sampler.records import TimingStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """One driver connection.  ``generation`` grows monotonically."""

    generation: int
    opened_at: float
    reason: str = "open"


class SessionManager:
    """Own the driver connection lifecycle.

    Parameters
    ----------
    driver : TargetDriver
        The driver whose connection is managed.
    timing : TimingStats, optional
        Restart counts and durations are accumulated here.
    clock : callable
        Monotonic clock, injected for tests.
    """

    def __init__(
        self,
        driver: TargetDriver,
        timing: Optional[TimingStats] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.timing = timing if timing is not None else TimingStats()
        self._clock = clock
        self._generation = 0
        self._current: Optional[Session] = None

    @property
    def generation(self) -> int:
        return self._generation

    def open(self, reason: str = "open") -> Session:
        """Connect the driver and start a new generation."""
        if self._current is not None:
            return self._current
        self.driver.connect()
        self._generation += 1
        self._current = Session(self._generation, self._clock(), reason)
        logger.info("Session %d opened (%s)", self._generation, reason)
        return self._current

    def restart(self, reason: str) -> Session:
        """Tear down the connection and open a fresh one."""
        started = self._clock()
        logger.warning("Restarting session %d: %s", self._generation, reason)
        self._disconnect()
        self.driver.connect()
        self._generation += 1
        self._current = Session(self._generation, self._clock(), reason)

        elapsed = self._clock() - started
        self.timing.session_restarts += 1
        self.timing.restart_total_s = round(self.timing.restart_total_s + elapsed, 3)
        logger.info("Session %d opened after restart (%.1fs)", self._generation, elapsed)
        return self._current

    def is_alive(self) -> bool:
        return self._current is not None and self.driver.is_alive()

    def close(self) -> None:
        if self._current is None:
            return
        self._disconnect()
        logger.info("Session %d closed", self._generation)

    def _disconnect(self) -> None:
        try:
            self.driver.disconnect()
        except Exception:
            logger.warning("Driver disconnect failed", exc_info=True)
        self._current = None
