"""Shared utilities for the command-line scripts.

Provides consistent logging setup (colored console, optional plain
file mirror), output directory naming and timestamp helpers.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# ---------------------------------------------------------------------------
# Output directory
# ---------------------------------------------------------------------------

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_OUTPUT_ROOT = _PROJECT_ROOT / "output"


def default_run_dir(prefix: str = "coupled-eval") -> Path:
    """Return a fresh, timestamped run directory under ``output/``.

    The directory is not created.
    """
    return DEFAULT_OUTPUT_ROOT / f"{prefix}_{timestamp_str()}"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_COLORS = {
    "DEBUG": "\033[90m",  # grey
    "INFO": "\033[36m",  # cyan
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[1;31m",  # bold red
}
_RESET = "\033[0m"

_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_NOISY_LOGGERS = ("selenium", "urllib3", "asyncio")


class _ColorFormatter(logging.Formatter):
    """Formatter that prepends a colored level tag and timestamp."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(tz=timezone.utc).strftime("%H:%M:%S")
        color = _COLORS.get(record.levelname, "")
        tag = f"{color}[{ts}] {record.levelname:<8}{_RESET}"
        message = f"{tag} {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(verbose: bool = False, log_file: str | Path | None = None) -> logging.Logger:
    """Configure the root logger with colored output.

    Parameters
    ----------
    verbose : bool
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.
    log_file : str or Path, optional
        Also append plain-text records to this file (e.g. the run's
        ``run.log``).

    Returns
    -------
    logging.Logger
        The root logger.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_ColorFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    # Avoid duplicate handlers on re-init
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        root.addHandler(file_handler)

    # Silence noisy third-party loggers
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return root


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def timestamp_str() -> str:
    """Return a filesystem-safe UTC timestamp string."""
    return datetime.now(tz=timezone.utc).strftime("%Y%m%d_%H%M%S")
