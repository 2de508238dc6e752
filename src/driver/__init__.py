"""Target driver subsystem: the sampler's only way to touch the target.

:class:`TargetDriver` is the abstract contract; :class:`SeleniumDriver`
is the browser implementation.  ``SeleniumDriver`` is imported lazily
by callers so that the core stays importable without a browser stack.
"""

from src.driver.base import (
    ACTION_NEXT,
    GPU_MODES,
    DriverError,
    DriverFailure,
    RendererInfo,
    SignalCheck,
    SignalKind,
    SignalSource,
    StateSnapshot,
    TargetDriver,
    TelemetryReading,
    TelemetrySample,
    TelemetryWindow,
    summarize_window,
)

__all__ = [
    "ACTION_NEXT",
    "GPU_MODES",
    "DriverError",
    "DriverFailure",
    "RendererInfo",
    "SignalCheck",
    "SignalKind",
    "SignalSource",
    "StateSnapshot",
    "TargetDriver",
    "TelemetryReading",
    "TelemetrySample",
    "TelemetryWindow",
    "summarize_window",
]
