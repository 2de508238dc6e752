"""Abstract base class for target loaders.

A :class:`TargetLoader` manages the lifecycle of getting the target
application served and reachable so that the sampler can drive it.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

from src.target_loader.config import TargetLoaderConfig

logger = logging.getLogger(__name__)


class TargetLoader(abc.ABC):
    """Base class for all target loaders.

    The loader lifecycle is:

    1. :meth:`setup` : one-time preparation (install deps, etc.)
    2. :meth:`start` : make the target reachable and wait until ready
    3. :meth:`is_ready`: liveness probe, also used as the bootstrap
       preflight
    4. :meth:`stop`  : tear down anything the loader started

    Parameters
    ----------
    config : TargetLoaderConfig
        Declarative configuration for the target.
    """

    def __init__(self, config: TargetLoaderConfig) -> None:
        self.config = config
        self._running: bool = False

    # -- Properties ----------------------------------------------------

    @property
    def name(self) -> str:
        """Human-readable target identifier."""
        return self.config.name

    @property
    def url(self) -> Optional[str]:
        """Base URL of the running target, or ``None``."""
        return self.config.url if self._running else None

    @property
    def running(self) -> bool:
        """Whether the target is currently being served."""
        return self._running

    # -- Lifecycle -----------------------------------------------------

    @abc.abstractmethod
    def setup(self) -> None:
        """One-time setup.  Implementations must be idempotent."""

    @abc.abstractmethod
    def start(self) -> None:
        """Make the target reachable and block until it is ready.

        Raises
        ------
        TargetLoaderError
            If the target does not become ready within the configured
            timeout.
        """

    @abc.abstractmethod
    def is_ready(self) -> bool:
        """Return ``True`` if the target endpoint is responding."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Release anything started by :meth:`start`.

        Must be safe to call even if the target was never started.
        """

    # -- Context manager -----------------------------------------------

    def __enter__(self) -> "TargetLoader":
        self.setup()
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:  # noqa: ANN001
        self.stop()
        return False

    def __repr__(self) -> str:
        status = "running" if self._running else "stopped"
        return f"<{type(self).__name__}({self.config.name!r}, {status})>"


class TargetLoaderError(Exception):
    """Raised when a target loader encounters an unrecoverable error."""
