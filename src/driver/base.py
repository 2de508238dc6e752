"""Target driver contract: the narrow interface the sampler drives.

The sampler core never talks to a browser directly.  Everything it
needs (navigation, state observation, the "next" action, telemetry
windows, the audio signal) goes through a :class:`TargetDriver`.
Failures surface as :class:`DriverError` carrying a structured
:class:`DriverFailure` reason, so callers classify errors by type
rather than by parsing messages.

The observed target state is a :class:`StateSnapshot` with a fixed
schema.  Every field is optional: ``None`` means "not observed",
which is distinct from an observed ``False`` or ``0``.
"""

from __future__ import annotations

import abc
import enum
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

#: Motion proxy weights for the luma and colour deltas.
MOTION_LUMA_WEIGHT = 0.65
MOTION_COLOR_WEIGHT = 0.35


class DriverFailure(enum.Enum):
    """Structured reason attached to every :class:`DriverError`."""

    TIMEOUT = "timeout"
    SIGNAL_LOST = "signal_lost"
    CLOSED = "closed"
    UNREACHABLE = "unreachable"
    SCRIPT = "script"


class DriverError(Exception):
    """Raised by driver implementations for any failed interaction.

    Parameters
    ----------
    reason : DriverFailure
        What kind of failure occurred.
    message : str
        Human-readable detail for logs and ``meta.json``.
    """

    def __init__(self, reason: DriverFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value

    def __repr__(self) -> str:
        return f"DriverError({self.reason.name}, {self.message!r})"


# ---------------------------------------------------------------------------
# Snapshot schema
# ---------------------------------------------------------------------------


def _opt_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _opt_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def _opt_int(value: Any) -> Optional[int]:
    num = _opt_float(value)
    return None if num is None else int(math.floor(num))


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time view of the target's observable state.

    Attributes
    ----------
    ready : bool or None
        Core interactive surface present (canvas and action trigger).
    hooks_ready : bool or None
        Verification hooks installed and reporting ready.
    pack_id : str or None
        Pack the target reports as active.
    pack_enabled : bool or None
        Whether the pack sampling mode is enabled.
    action_enabled : bool or None
        Whether the action trigger currently accepts input.
    last_action_time_ms : float or None
        Marker that changes every time a pick lands.
    last_trial_id : int or None
        Trial id of the most recent pick.
    applied_fg_id, applied_bg_id : str or None
        Identifiers actually applied by the target.
    status_text : str or None
        Free-text status line (used to wait out loading states).
    signal_rms, signal_peak : float or None
        Latest audio analysis levels.
    warp_diff, cx_diff, quality01, intensity01 : float or None
        Per-trial attributes of the last pick.
    pm_avg_luma_fg, pm_avg_luma_bg : float or None
        Per-layer average luma.
    """

    ready: Optional[bool] = None
    hooks_ready: Optional[bool] = None
    pack_id: Optional[str] = None
    pack_enabled: Optional[bool] = None
    action_enabled: Optional[bool] = None
    last_action_time_ms: Optional[float] = None
    last_trial_id: Optional[int] = None
    applied_fg_id: Optional[str] = None
    applied_bg_id: Optional[str] = None
    status_text: Optional[str] = None
    signal_rms: Optional[float] = None
    signal_peak: Optional[float] = None
    warp_diff: Optional[float] = None
    cx_diff: Optional[float] = None
    quality01: Optional[float] = None
    intensity01: Optional[float] = None
    pm_avg_luma_fg: Optional[float] = None
    pm_avg_luma_bg: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "StateSnapshot":
        """Build a snapshot from the driver's raw JSON-like mapping.

        Unknown keys are ignored, missing keys become ``None`` and
        values of the wrong type are treated as not observed.
        """
        if not raw:
            return cls()
        return cls(
            ready=_opt_bool(raw.get("ready")),
            hooks_ready=_opt_bool(raw.get("hooksReady")),
            pack_id=_opt_str(raw.get("pack")),
            pack_enabled=_opt_bool(raw.get("packEnabled")),
            action_enabled=_opt_bool(raw.get("actionEnabled")),
            last_action_time_ms=_opt_float(raw.get("lastActionTimeMs")),
            last_trial_id=_opt_int(raw.get("lastPair")),
            applied_fg_id=_opt_str(raw.get("presetFgId")),
            applied_bg_id=_opt_str(raw.get("presetBgId")),
            status_text=_opt_str(raw.get("statusText")),
            signal_rms=_opt_float(raw.get("audioRms")),
            signal_peak=_opt_float(raw.get("audioPeak")),
            warp_diff=_opt_float(raw.get("warpDiff")),
            cx_diff=_opt_float(raw.get("cxDiff")),
            quality01=_opt_float(raw.get("quality01")),
            intensity01=_opt_float(raw.get("intensity01")),
            pm_avg_luma_fg=_opt_float(raw.get("pmAvgLumaFg")),
            pm_avg_luma_bg=_opt_float(raw.get("pmAvgLumaBg")),
        )

    @property
    def is_loading(self) -> bool:
        """``True`` while the status line reports a loading state."""
        if not self.status_text:
            return False
        return "loading" in self.status_text.lower() or "加载" in self.status_text

    def pack_active(self, pack_id: str) -> bool:
        """Return ``True`` if the target reports *pack_id* as enabled."""
        return bool(self.pack_enabled) and self.pack_id == pack_id


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TelemetryWindow:
    """Sampling window for one trial's telemetry.

    ``warmup`` leading readings are discarded; the following
    ``measure`` readings are aggregated.
    """

    interval_s: float = 0.25
    warmup: int = 2
    measure: int = 6

    @property
    def total(self) -> int:
        return self.warmup + self.measure


@dataclass(frozen=True)
class TelemetryReading:
    """One raw read of the per-layer render statistics."""

    fg_luma: Optional[float] = None
    bg_luma: Optional[float] = None
    fg_color: Optional[tuple[float, float, float]] = None
    bg_color: Optional[tuple[float, float, float]] = None

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "TelemetryReading":
        if not raw:
            return cls()
        return cls(
            fg_luma=_opt_float(raw.get("fgLuma")),
            bg_luma=_opt_float(raw.get("bgLuma")),
            fg_color=_opt_color(raw.get("fgColor")),
            bg_color=_opt_color(raw.get("bgColor")),
        )

    @property
    def composite_luma(self) -> Optional[float]:
        values = [v for v in (self.fg_luma, self.bg_luma) if v is not None]
        if not values:
            return None
        return float(np.mean(values))


def _opt_color(value: Any) -> Optional[tuple[float, float, float]]:
    if not isinstance(value, Mapping):
        return None
    channels = [_opt_float(value.get(k)) for k in ("r", "g", "b")]
    if any(c is None for c in channels):
        return None
    return (channels[0], channels[1], channels[2])  # type: ignore[return-value]


def _color_delta(
    prev: Optional[tuple[float, float, float]],
    cur: Optional[tuple[float, float, float]],
) -> Optional[float]:
    if prev is None or cur is None:
        return None
    return float(np.mean(np.abs(np.subtract(cur, prev))))


@dataclass(frozen=True)
class TelemetrySample:
    """Aggregated telemetry of one measurement window."""

    avg_luma: Optional[float] = None
    avg_frame_delta: Optional[float] = None
    readings: int = 0


def summarize_window(readings: Sequence[TelemetryReading], warmup: int) -> TelemetrySample:
    """Aggregate raw readings into average luma and a motion proxy.

    Readings before index ``warmup`` are discarded.  Luma is the mean
    composite (fg/bg average) luma over the measured readings.  Motion
    for each measured reading is ``0.65 * dluma + 0.35 * dcolor``
    against the previous reading, falling back to whichever delta is
    available, and is averaged over the window.

    Parameters
    ----------
    readings : sequence of TelemetryReading
        Readings in capture order.
    warmup : int
        Number of leading readings to discard.

    Returns
    -------
    TelemetrySample
        ``avg_luma`` / ``avg_frame_delta`` are ``None`` when no
        reading in the window produced a value.
    """
    lumas: list[float] = []
    motions: list[float] = []
    prev: Optional[TelemetryReading] = None

    for index, cur in enumerate(readings):
        luma = cur.composite_luma
        if index >= warmup:
            if luma is not None:
                lumas.append(luma)
            if prev is not None:
                prev_luma = prev.composite_luma
                dluma = (
                    abs(luma - prev_luma) if luma is not None and prev_luma is not None else None
                )
                color_deltas = [
                    d
                    for d in (
                        _color_delta(prev.fg_color, cur.fg_color),
                        _color_delta(prev.bg_color, cur.bg_color),
                    )
                    if d is not None
                ]
                dcolor = float(np.mean(color_deltas)) if color_deltas else None

                if dluma is not None and dcolor is not None:
                    motions.append(MOTION_LUMA_WEIGHT * dluma + MOTION_COLOR_WEIGHT * dcolor)
                elif dluma is not None:
                    motions.append(dluma)
                elif dcolor is not None:
                    motions.append(dcolor)
        prev = cur

    return TelemetrySample(
        avg_luma=float(np.mean(lumas)) if lumas else None,
        avg_frame_delta=float(np.mean(motions)) if motions else None,
        readings=len(readings),
    )


# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------


class SignalKind(enum.Enum):
    """Where the audio drive signal comes from."""

    FILE = "file"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True)
class SignalSource:
    """A signal to drive into the target.

    Attributes
    ----------
    kind : SignalKind
        File upload or generated click-track.
    path : Path, optional
        Audio file for :attr:`SignalKind.FILE`.
    min_rms : float
        Minimum analysed RMS that counts as a live signal.
    settle_s : float
        How long to poll for the level before giving up.
    """

    kind: SignalKind
    path: Optional[Path] = None
    min_rms: float = 0.0005
    settle_s: float = 1.2


@dataclass
class SignalCheck:
    """Outcome of :meth:`TargetDriver.drive_signal`."""

    ok: bool
    source: str
    rms: Optional[float] = None
    peak: Optional[float] = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


#: Browser GPU launch modes.
GPU_MODES = ("off", "safe", "force-d3d11")


@dataclass(frozen=True)
class RendererInfo:
    """WebGL vendor and renderer reported by the browser.

    ``ok`` is ``False`` when no WebGL context could be created; ``error``
    then says why.
    """

    ok: bool
    vendor: Optional[str] = None
    renderer: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "RendererInfo":
        if not raw:
            return cls(ok=False, error="no renderer info")
        return cls(
            ok=bool(raw.get("ok")),
            vendor=_opt_str(raw.get("vendor")),
            renderer=_opt_str(raw.get("renderer")),
            error=_opt_str(raw.get("error")),
        )

    @property
    def is_software(self) -> bool:
        """True for the SwiftShader software rasterizer."""
        return "swiftshader" in (self.renderer or "").lower()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            data.update(vendor=self.vendor, renderer=self.renderer)
        else:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Driver ABC
# ---------------------------------------------------------------------------


#: Action that asks the target for the next pick.
ACTION_NEXT = "next"


class TargetDriver(abc.ABC):
    """Abstract driver for the sampled target.

    Every blocking call takes or implies a timeout and raises
    :class:`DriverError` with reason :attr:`DriverFailure.TIMEOUT`
    when it expires.  Implementations must be usable again after
    :meth:`disconnect` followed by :meth:`connect`.
    """

    # -- Connection ----------------------------------------------------

    @abc.abstractmethod
    def connect(self) -> None:
        """Open a fresh driver connection (e.g. launch a browser)."""

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Close the connection.  Safe to call when already closed."""

    @abc.abstractmethod
    def is_alive(self) -> bool:
        """Return ``True`` if the connection still responds."""

    # -- Navigation / observation -------------------------------------

    @abc.abstractmethod
    def navigate(self, url: str, timeout_s: float) -> None:
        """Load *url*, raising ``DriverError`` on timeout or failure."""

    @abc.abstractmethod
    def observe(self) -> StateSnapshot:
        """Return the current :class:`StateSnapshot`."""

    @abc.abstractmethod
    def wait_for(
        self,
        predicate: Callable[[StateSnapshot], bool],
        timeout_s: float,
        what: str,
    ) -> StateSnapshot:
        """Poll :meth:`observe` until *predicate* holds.

        Returns the satisfying snapshot.  Raises ``DriverError``
        (``TIMEOUT``) naming *what* when the timeout expires.
        """

    @abc.abstractmethod
    def reload(self, timeout_s: float) -> None:
        """Soft reset: reload the current page within this connection."""

    # -- Actions -------------------------------------------------------

    @abc.abstractmethod
    def act(self, action_id: str) -> None:
        """Trigger *action_id* (normally :data:`ACTION_NEXT`)."""

    @abc.abstractmethod
    def set_flags(self) -> None:
        """(Re-)assert operating flags.  Must be idempotent."""

    @abc.abstractmethod
    def init_pack(self, pack_id: str) -> None:
        """Ask the target to enter sampling mode for *pack_id*."""

    @abc.abstractmethod
    def seed_order(self, pack_id: str, order: Sequence[int], reason: str) -> None:
        """Store a priority ordering of manifest indices for *pack_id*."""

    # -- Telemetry -----------------------------------------------------

    @abc.abstractmethod
    def sample_telemetry(self, window: TelemetryWindow) -> TelemetrySample:
        """Capture and aggregate one telemetry window."""

    @abc.abstractmethod
    def drive_signal(self, source: SignalSource) -> SignalCheck:
        """Feed *source* into the target and report the analysed level."""

    @abc.abstractmethod
    def drain_error_counts(self) -> tuple[int, int]:
        """Return ``(page_errors, console_errors)`` since the last drain."""

    @abc.abstractmethod
    def renderer_info(self) -> RendererInfo:
        """Report the WebGL renderer of the current page."""

    # -- Context manager -----------------------------------------------

    def __enter__(self) -> "TargetDriver":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:  # noqa: ANN001
        self.disconnect()
        return False

