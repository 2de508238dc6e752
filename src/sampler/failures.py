"""Error taxonomy and failure classification for the sampling loop.

Every failure the sampler reacts to is either a :class:`SamplerError`
subclass or a :class:`~src.driver.base.DriverError`.  :func:`classify`
maps any of them to a :class:`FailureKind`, which decides whether the
recovery controller retries, restarts the session or gives up.
:func:`error_code` maps the same errors to the structured codes
written to ``meta.json``.

Unknown exceptions classify as :attr:`FailureKind.SESSION_FATAL`: one
session restart is cheaper than losing the run.
"""

from __future__ import annotations

import enum
from typing import Optional

from src.driver.base import DriverError, DriverFailure
from src.target_loader.base import TargetLoaderError


class FailureKind(enum.Enum):
    """How the recovery controller should treat a failure."""

    TRANSIENT = "transient"
    SESSION_FATAL = "session_fatal"
    INFRA_FATAL = "infra_fatal"
    DATA_INTEGRITY_FATAL = "data_integrity_fatal"


class ErrorCode(str, enum.Enum):
    """Structured codes recorded in ``meta.json`` on fatal termination."""

    MANIFEST_MISMATCH = "FATAL_MANIFEST_MISMATCH"
    TARGET_UNREACHABLE = "FATAL_TARGET_UNREACHABLE"
    TARGET_NOT_READY = "FATAL_TARGET_NOT_READY"
    SESSION_RESTART_LIMIT = "FATAL_SESSION_RESTART_LIMIT"
    RECOVERY_LIMIT = "FATAL_RECOVERY_LIMIT"
    NO_SAMPLES = "FATAL_NO_SAMPLES"
    SESSION_CRASH = "FATAL_SESSION_CRASH"
    SIGNAL = "FATAL_SIGNAL"
    BOOTSTRAP = "FATAL_BOOTSTRAP"
    WEBGL_SWIFTSHADER = "FATAL_WEBGL_SWIFTSHADER"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class SamplerError(Exception):
    """Base class of all sampler errors.

    Subclasses set :attr:`kind` and :attr:`code` as class attributes.
    """

    kind: FailureKind = FailureKind.SESSION_FATAL
    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class TransientError(SamplerError):
    """A failure expected to clear on its own (slow target, brief stall)."""

    kind = FailureKind.TRANSIENT


class TrialTimeoutError(TransientError):
    """A bounded wait inside a trial expired.

    Parameters
    ----------
    phase : str
        Which wait expired (``"button"``, ``"pick"``, ``"presetIds"``).
    message : str
        Detail for the log.
    """

    code = ErrorCode.TARGET_NOT_READY

    def __init__(self, phase: str, message: str = "") -> None:
        super().__init__(message or f"timeout in phase {phase}")
        self.phase = phase


class SignalLostError(TransientError):
    """No usable audio signal could be established."""

    code = ErrorCode.SIGNAL


class SessionFatalError(SamplerError):
    """The current driver session is unusable and must be replaced."""

    kind = FailureKind.SESSION_FATAL
    code = ErrorCode.SESSION_CRASH


class SessionClosedError(SessionFatalError):
    """The browser, page or driver connection has gone away."""


class InfraFatalError(SamplerError):
    """The target endpoint is unreachable at the transport level."""

    kind = FailureKind.INFRA_FATAL
    code = ErrorCode.TARGET_UNREACHABLE


class DataIntegrityError(SamplerError):
    """Observed data contradicts the manifest; continuing would log garbage."""

    kind = FailureKind.DATA_INTEGRITY_FATAL
    code = ErrorCode.MANIFEST_MISMATCH


class ManifestError(DataIntegrityError):
    """A pack manifest is missing or malformed."""


class BootstrapError(SamplerError):
    """A bootstrap step failed.

    Classified and coded as its :attr:`cause` so that, e.g., a closed
    session during bootstrap is still recoverable.

    Parameters
    ----------
    step : str
        Bootstrap step that failed.
    cause : BaseException
        The underlying error.
    """

    code = ErrorCode.BOOTSTRAP

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"bootstrap step {step!r} failed: {cause}")
        self.step = step
        self.cause = cause


class RunFatalError(SamplerError):
    """Terminal error: the run stops and ``meta.error`` is written.

    Raised for budget escalations and run-level checks.

    Parameters
    ----------
    code : ErrorCode
        Code recorded in ``meta.json``.
    message : str
        Detail for the log.
    """

    kind = FailureKind.INFRA_FATAL

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_DRIVER_KINDS: dict[DriverFailure, FailureKind] = {
    DriverFailure.TIMEOUT: FailureKind.TRANSIENT,
    DriverFailure.SIGNAL_LOST: FailureKind.TRANSIENT,
    DriverFailure.CLOSED: FailureKind.SESSION_FATAL,
    DriverFailure.UNREACHABLE: FailureKind.INFRA_FATAL,
    DriverFailure.SCRIPT: FailureKind.SESSION_FATAL,
}

_DRIVER_CODES: dict[DriverFailure, ErrorCode] = {
    DriverFailure.TIMEOUT: ErrorCode.TARGET_NOT_READY,
    DriverFailure.SIGNAL_LOST: ErrorCode.SIGNAL,
    DriverFailure.CLOSED: ErrorCode.SESSION_CRASH,
    DriverFailure.UNREACHABLE: ErrorCode.TARGET_UNREACHABLE,
    DriverFailure.SCRIPT: ErrorCode.SESSION_CRASH,
}


def root_cause(error: BaseException) -> BaseException:
    """Unwrap nested :class:`BootstrapError` layers."""
    while isinstance(error, BootstrapError):
        error = error.cause
    return error


def classify(error: BaseException) -> FailureKind:
    """Map *error* to the :class:`FailureKind` that drives recovery.

    Pure function: no logging, no side effects.
    """
    error = root_cause(error)
    if isinstance(error, SamplerError):
        return error.kind
    if isinstance(error, DriverError):
        return _DRIVER_KINDS.get(error.reason, FailureKind.SESSION_FATAL)
    if isinstance(error, TargetLoaderError):
        return FailureKind.INFRA_FATAL
    return FailureKind.SESSION_FATAL


def error_code(error: BaseException) -> ErrorCode:
    """Map *error* to the structured code recorded in ``meta.json``."""
    if isinstance(error, BootstrapError):
        inner = error_code(error.cause)
        return ErrorCode.BOOTSTRAP if inner is ErrorCode.UNKNOWN else inner
    if isinstance(error, SamplerError):
        return error.code
    if isinstance(error, DriverError):
        return _DRIVER_CODES.get(error.reason, ErrorCode.UNKNOWN)
    if isinstance(error, TargetLoaderError):
        return ErrorCode.TARGET_NOT_READY
    return ErrorCode.UNKNOWN


def is_recoverable_by_restart(error: BaseException) -> bool:
    """Whether a failed bootstrap should be retried on a fresh session.

    A lost session or a lost signal qualifies.  Unclassified errors
    count as a lost session.  Any other typed error would fail again
    the same way.
    """
    cause = root_cause(error)
    if isinstance(cause, (SessionFatalError, SignalLostError)):
        return True
    if isinstance(cause, DriverError):
        return cause.reason in (DriverFailure.CLOSED, DriverFailure.SIGNAL_LOST)
    return not isinstance(cause, (SamplerError, TargetLoaderError))


def is_fatal(kind: FailureKind) -> bool:
    return kind in (FailureKind.INFRA_FATAL, FailureKind.DATA_INTEGRITY_FATAL)


def describe(error: BaseException) -> str:
    """Short one-line description for logs and ``meta.error.message``."""
    cause: Optional[BaseException] = root_cause(error)
    text = str(error).strip() or type(error).__name__
    if cause is not error and cause is not None:
        text = f"{text} [{type(cause).__name__}]"
    return text.splitlines()[0][:600]
