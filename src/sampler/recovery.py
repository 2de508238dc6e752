"""Recovery controller: the failure state machine of the sampling loop.

States and transitions::

    SAMPLING --transient x N--> RECOVERING --soft reset ok--> SAMPLING
    RECOVERING --budget exhausted, session gone or reset failed--> SESSION_RESTART
    SAMPLING --session fatal--> SESSION_RESTART --bootstrap ok--> SAMPLING
    SESSION_RESTART --restart budget exhausted--> FAILED
    any --infra / data-integrity fatal--> FAILED

``consecutive_failures`` resets on every successful trial,
``recovery_attempts`` after every confirmed bootstrap, and
``session_restarts`` never.
"""

from __future__ import annotations

import enum
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable

from src.sampler.failures import (
    ErrorCode,
    FailureKind,
    RunFatalError,
    classify,
    describe,
    is_fatal,
    is_recoverable_by_restart,
)
from src.sampler.session import SessionManager

logger = logging.getLogger(__name__)


class RecoveryPhase(enum.Enum):
    SAMPLING = "sampling"
    RECOVERING = "recovering"
    SESSION_RESTART = "session_restart"
    FAILED = "failed"


@dataclass
class RecoveryState:
    """Failure counters of the run."""

    consecutive_failures: int = 0
    recovery_attempts: int = 0
    session_restarts: int = 0


class RecoveryController:
    """Decide and perform the reaction to each failure.

    Parameters
    ----------
    session : SessionManager
        Used to restart the driver connection.
    stuck_max_consecutive : int
        Consecutive transient failures before a soft reset.
    max_recoveries : int
        Soft resets (and bootstrap retries) before escalating.
    max_restarts : int
        Session restarts allowed over the whole run.
    """

    def __init__(
        self,
        session: SessionManager,
        stuck_max_consecutive: int = 3,
        max_recoveries: int = 6,
        max_restarts: int = 20,
    ) -> None:
        self.session = session
        self.stuck_max_consecutive = stuck_max_consecutive
        self.max_recoveries = max_recoveries
        self.max_restarts = max_restarts
        self.state = RecoveryState()
        self.phase = RecoveryPhase.SAMPLING
        self.transitions: Counter = Counter()

    def _enter(self, phase: RecoveryPhase) -> None:
        if phase is not self.phase:
            logger.debug("Recovery: %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        self.transitions[phase] += 1

    def _fail(self, error: BaseException) -> None:
        self._enter(RecoveryPhase.FAILED)
        raise error

    # -- Success signals -----------------------------------------------

    def on_success(self) -> None:
        """A trial completed."""
        self.state.consecutive_failures = 0
        if self.phase is not RecoveryPhase.SAMPLING:
            self._enter(RecoveryPhase.SAMPLING)

    def on_bootstrap_ok(self) -> None:
        """A bootstrap (including its self-test) completed."""
        self.state.consecutive_failures = 0
        self.state.recovery_attempts = 0
        if self.phase is not RecoveryPhase.SAMPLING:
            self._enter(RecoveryPhase.SAMPLING)

    # -- Failure handling ------------------------------------------------

    def handle(
        self,
        error: BaseException,
        soft_reset: Callable[[], None],
        run_bootstrap: Callable[[], None],
    ) -> None:
        """React to a failure raised by the trial loop.

        Returns normally when sampling can continue.

        Raises
        ------
        RunFatalError, InfraFatalError, DataIntegrityError
            When the failure is fatal or a budget is exhausted.
        """
        if isinstance(error, RunFatalError):
            self._fail(error)
        kind = classify(error)
        if is_fatal(kind):
            logger.error("Fatal %s failure: %s", kind.value, describe(error))
            self._fail(error)

        if kind is FailureKind.TRANSIENT:
            self.state.consecutive_failures += 1
            logger.warning(
                "Transient failure %d/%d: %s",
                self.state.consecutive_failures,
                self.stuck_max_consecutive,
                describe(error),
            )
            if self.state.consecutive_failures < self.stuck_max_consecutive:
                return
            self._recover(error, soft_reset, run_bootstrap)
            return

        logger.warning("Session failure: %s", describe(error))
        self.restart_session(f"session fatal: {describe(error)}", run_bootstrap)

    def _recover(
        self,
        error: BaseException,
        soft_reset: Callable[[], None],
        run_bootstrap: Callable[[], None],
    ) -> None:
        self._enter(RecoveryPhase.RECOVERING)
        self.state.recovery_attempts += 1
        self.state.consecutive_failures = 0

        if self.state.recovery_attempts > self.max_recoveries:
            logger.warning(
                "Recovery budget exhausted (%d > %d), escalating to session restart",
                self.state.recovery_attempts,
                self.max_recoveries,
            )
            self.restart_session(f"stuck after {self.max_recoveries} recoveries", run_bootstrap)
            return

        if not self.session.is_alive():
            logger.warning("Stuck (%s) and the session is gone, skipping soft reset", describe(error))
            self.restart_session(f"session lost: {describe(error)}", run_bootstrap)
            return

        logger.warning(
            "Stuck (%s); soft reset %d/%d",
            describe(error),
            self.state.recovery_attempts,
            self.max_recoveries,
        )
        try:
            soft_reset()
        except Exception as exc:
            if isinstance(exc, RunFatalError) or is_fatal(classify(exc)):
                self._fail(exc)
            logger.warning("Soft reset failed (%s), escalating to session restart", describe(exc))
            self.restart_session(f"soft reset failed: {describe(exc)}", run_bootstrap)
            return
        self._enter(RecoveryPhase.SAMPLING)

    # -- Session restart -------------------------------------------------

    def _restart_driver(self, reason: str) -> None:
        """Replace the connection; each relaunch attempt counts as a restart.

        A relaunch that fails (browser did not start, driver died) is
        retried while the restart budget lasts.
        """
        self._enter(RecoveryPhase.SESSION_RESTART)
        while True:
            self.state.session_restarts += 1
            if self.state.session_restarts > self.max_restarts:
                self._fail(
                    RunFatalError(
                        ErrorCode.SESSION_RESTART_LIMIT,
                        f"Session restart limit reached ({self.max_restarts}); "
                        f"last reason: {reason}",
                    )
                )
            logger.warning(
                "Session restart %d/%d: %s", self.state.session_restarts, self.max_restarts, reason
            )
            try:
                self.session.restart(reason)
                return
            except Exception as exc:
                if isinstance(exc, RunFatalError) or is_fatal(classify(exc)):
                    self._fail(exc)
                logger.warning("Session relaunch failed: %s", describe(exc))
                reason = f"relaunch failed: {describe(exc)}"

    def restart_session(self, reason: str, run_bootstrap: Callable[[], None]) -> None:
        """Replace the session and bootstrap it again."""
        self._restart_driver(reason)
        self.bootstrap(run_bootstrap, reason)

    def bootstrap(self, run_bootstrap: Callable[[], None], reason: str) -> None:
        """Run *run_bootstrap*, restarting the session on recoverable causes.

        Only a lost session or a lost signal is retried, at most
        ``max_recoveries`` times; anything else propagates.

        Raises
        ------
        RunFatalError
            ``FATAL_RECOVERY_LIMIT`` when retries run out, or
            ``FATAL_SESSION_RESTART_LIMIT`` from a restart.
        """
        retries = 0
        while True:
            try:
                run_bootstrap()
            except Exception as exc:
                if isinstance(exc, RunFatalError) or not is_recoverable_by_restart(exc):
                    self._fail(exc)
                retries += 1
                if retries > self.max_recoveries:
                    self._fail(
                        RunFatalError(
                            ErrorCode.RECOVERY_LIMIT,
                            f"Bootstrap kept failing after {self.max_recoveries} retries "
                            f"({reason}): {describe(exc)}",
                        )
                    )
                logger.warning("Bootstrap failed (%s), retry %d", describe(exc), retries)
                self._restart_driver(f"bootstrap retry {retries}: {describe(exc)}")
                continue
            self.on_bootstrap_ok()
            return
