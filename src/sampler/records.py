"""Data model of a sampling run: trial records and run metadata.

:class:`TrialRecord` is one line of ``trials.log``; its JSON form uses
the camelCase keys existing logs already carry (``tMs``, ``pack``,
``pair``, ...).  :class:`RunMetadata` is the content of ``meta.json``.
Both are plain dataclasses serialised with :func:`dataclasses.asdict`
plus a key mapping.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

META_KIND = "coupled_eval.v0"

# Python attribute -> JSON key of a trials.log line.
_RECORD_KEYS: dict[str, str] = {
    "timestamp_ms": "tMs",
    "pack_id": "pack",
    "trial_id": "pair",
    "warp_diff": "warpDiff",
    "cx_diff": "cxDiff",
    "quality01": "quality01",
    "intensity01": "intensity01",
    "preset_fg_id": "presetFgId",
    "preset_bg_id": "presetBgId",
    "viz_avg_luma": "vizAvgLuma",
    "viz_avg_frame_delta": "vizAvgFrameDelta",
    "pm_avg_luma_fg": "pmAvgLumaFg",
    "pm_avg_luma_bg": "pmAvgLumaBg",
    "audio_rms": "audioRms",
    "audio_peak": "audioPeak",
    "page_errors_since_last": "pageErrorsSinceLast",
    "console_errors_since_last": "consoleErrorsSinceLast",
    "ok_heuristic": "okHeuristic",
    "reasons": "reasons",
}


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with milliseconds."""
    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds")


def iso_from_epoch(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat(timespec="milliseconds")


def _finite_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


@dataclass(frozen=True)
class TrialRecord:
    """One completed trial.  Written once, never mutated."""

    timestamp_ms: int
    pack_id: str
    trial_id: Optional[int]
    warp_diff: Optional[float] = None
    cx_diff: Optional[float] = None
    quality01: Optional[float] = None
    intensity01: Optional[float] = None
    preset_fg_id: Optional[str] = None
    preset_bg_id: Optional[str] = None
    viz_avg_luma: Optional[float] = None
    viz_avg_frame_delta: Optional[float] = None
    pm_avg_luma_fg: Optional[float] = None
    pm_avg_luma_bg: Optional[float] = None
    audio_rms: Optional[float] = None
    audio_peak: Optional[float] = None
    page_errors_since_last: int = 0
    console_errors_since_last: int = 0
    ok_heuristic: bool = True
    reasons: tuple[str, ...] = ()

    def to_json_dict(self) -> dict[str, Any]:
        """Return the record keyed the way ``trials.log`` stores it."""
        data = asdict(self)
        data["reasons"] = list(self.reasons)
        return {_RECORD_KEYS[k]: v for k, v in data.items()}

    @classmethod
    def from_json_dict(cls, data: Mapping[str, Any]) -> "TrialRecord":
        """Parse a ``trials.log`` object.  Unknown keys are ignored."""
        kwargs: dict[str, Any] = {}
        for attr, key in _RECORD_KEYS.items():
            if key in data:
                kwargs[attr] = data[key]
        trial = _finite_or_none(kwargs.get("trial_id"))
        kwargs["trial_id"] = None if trial is None else int(math.floor(trial))
        kwargs["reasons"] = tuple(str(r) for r in kwargs.get("reasons") or ())
        kwargs.setdefault("timestamp_ms", 0)
        kwargs.setdefault("pack_id", "")
        return cls(**kwargs)


@dataclass
class PackProgress:
    """Progress of one pack as recorded in ``meta.json``."""

    iter: int = 0
    visited: int = 0
    target: int = 0
    target_mode: str = "coverage"
    done: bool = False
    skipped: Optional[str] = None
    elapsed_min: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "iter": self.iter,
            "visited": self.visited,
            "target": self.target,
            "targetMode": self.target_mode,
            "done": self.done,
        }
        if self.skipped is not None:
            data["skipped"] = self.skipped
        if self.elapsed_min is not None:
            data["elapsedMin"] = self.elapsed_min
        return data


@dataclass
class TimingStats:
    """Cumulative timing counters, carried across resumes."""

    nav_timeouts: int = 0
    nav_total_s: float = 0.0
    session_restarts: int = 0
    restart_total_s: float = 0.0
    signal_checks: int = 0
    signal_failures: int = 0
    preflight: list[dict[str, Any]] = field(default_factory=list)
    sampling_started_at: Optional[str] = None
    elapsed_s: float = 0.0

    #: Preflight results kept in ``meta.json``.
    MAX_PREFLIGHT_ENTRIES = 20

    def record_preflight(self, url: str, ok: bool) -> None:
        self.preflight.append({"at": utc_now_iso(), "url": url, "ok": ok})
        del self.preflight[: -self.MAX_PREFLIGHT_ENTRIES]

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TimingStats":
        if not data:
            return cls()
        valid = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in valid})


@dataclass
class RunError:
    """The ``error`` object of ``meta.json``."""

    code: str
    pack: Optional[str]
    iter: Optional[int]
    phase: str
    message: str
    at: str = field(default_factory=utc_now_iso)


@dataclass
class RunMetadata:
    """Content of ``meta.json``.

    ``error`` is only present on fatal termination; ``errors`` keeps
    the fatal errors of earlier attempts of a resumed run.
    """

    run_id: str
    started_at: str = field(default_factory=utc_now_iso)
    kind: str = META_KIND
    finished_at: Optional[str] = None
    resumed_at: Optional[str] = None
    budget: dict[str, Any] = field(default_factory=dict)
    packs: dict[str, Any] = field(default_factory=dict)
    limits: dict[str, Any] = field(default_factory=dict)
    timeouts: dict[str, Any] = field(default_factory=dict)
    sample: dict[str, Any] = field(default_factory=dict)
    recovery: dict[str, Any] = field(default_factory=dict)
    heuristic: dict[str, Any] = field(default_factory=dict)
    runtime: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    progress: dict[str, PackProgress] = field(default_factory=dict)
    timing: TimingStats = field(default_factory=TimingStats)
    errors: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[RunError] = None

    def merge_previous(self, previous: Mapping[str, Any]) -> None:
        """Carry identity, timing and error history over from a prior attempt."""
        self.run_id = str(previous.get("run_id") or self.run_id)
        self.started_at = str(previous.get("started_at") or self.started_at)
        self.resumed_at = utc_now_iso()
        self.timing = TimingStats.from_dict(previous.get("timing"))
        self.errors = [dict(e) for e in previous.get("errors") or [] if isinstance(e, Mapping)]
        prev_error = previous.get("error")
        if isinstance(prev_error, Mapping):
            self.errors.append(dict(prev_error))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = {pack: p.to_dict() for pack, p in self.progress.items()}
        if self.resumed_at is None:
            data.pop("resumed_at")
        if self.error is None:
            data.pop("error")
        return data
