"""Bounded retry with fixed backoff."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff_s: float,
    should_retry: Callable[[BaseException], bool],
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "operation",
) -> T:
    """Call *fn* up to *attempts* times.

    Parameters
    ----------
    fn : callable
        Zero-argument operation.
    attempts : int
        Maximum number of calls (at least 1).
    backoff_s : float
        Sleep between attempts.
    should_retry : callable
        Receives the raised exception; returning ``False`` re-raises it
        immediately.
    on_failure : callable, optional
        Called with ``(attempt, exc)`` after every failed attempt that
        ``should_retry`` accepted.
    sleep : callable
        Injected for tests.
    what : str
        Label for log messages.

    Returns
    -------
    T
        Result of the first successful call.

    Raises
    ------
    Exception
        The last exception once attempts are exhausted, or the first
        one ``should_retry`` rejects.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not should_retry(exc):
                raise
            if on_failure is not None:
                on_failure(attempt, exc)
            if attempt >= attempts:
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                what,
                attempt,
                attempts,
                exc,
                backoff_s,
            )
            if backoff_s > 0:
                sleep(backoff_s)
    raise AssertionError("unreachable")
