"""Run configuration for the sampler.

A :class:`SamplerConfig` holds every knob of a run.  Values come from
dataclass defaults, optionally a YAML file (:func:`load_sampler_config`)
and finally CLI overrides (:func:`apply_overrides`).  YAML string
values support ``$VAR`` / ``${VAR:-default}`` expansion, like target
configs do.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from src.driver.base import GPU_MODES, TelemetryWindow
from src.target_loader.config import read_yaml_mapping

logger = logging.getLogger(__name__)

PICK_STRATEGIES = ("random", "shuffle", "weighted")
AUDIO_MODES = ("auto", "file", "synthetic", "none")

#: Smallest wall-clock budget that leaves room for a few session restarts.
MIN_MAX_HOURS = 0.12

MIN_COVERAGE = 0.01
MAX_COVERAGE = 1.0


@dataclass
class SamplerConfig:
    """All settings of a sampling run.

    Parameters
    ----------
    packs : list[str]
        Packs to sample, in order.
    pick : str
        Pick strategy passed to the target (``random``, ``shuffle`` or
        ``weighted``).  ``shuffle`` enables priority seeding on resume.
    coverage : float
        Fraction of each pack's manifest to visit.  Clamped to
        ``[0.01, 1.0]``.
    target_samples : int
        When positive, a pack is done after this many recorded trials
        instead of by coverage.
    max_hours : float
        Wall-clock budget of the whole run.  Clamped up to
        :data:`MIN_MAX_HOURS` by the run controller.
    reload_every : int
        Soft reset cadence in iterations (``0`` disables).
    resume : bool
        Continue an existing output directory.
    trial_timeout_s : float
        Bound of every wait inside a trial.
    nav_timeout_s : float
        Page load timeout for each navigation attempt.
    ready_timeout_s : float
        Bound of the bootstrap readiness and pack-identity waits.
    nav_attempts, nav_backoff_s
        Navigation retry budget and fixed backoff.
    stuck_max_consecutive : int
        Consecutive transient failures that trigger a soft reset.
    max_recoveries : int
        Soft resets (and bootstrap retries) allowed before escalating.
    max_restarts : int
        Session restarts allowed over the whole run.
    luma_min, luma_max, motion_min : float
        Heuristic thresholds for ``too-dark``, ``too-bright`` and
        ``low-motion``.
    sample_interval_s, warmup_samples, measure_samples
        Telemetry window per trial.
    audio_mode : str
        ``auto`` (file, then click-track), ``file``, ``synthetic`` or
        ``none``.
    audio_file : str, optional
        Audio file for the ``auto`` / ``file`` modes.
    require_signal : bool
        Refuse to run without a signal (only meaningful with ``none``).
    min_signal_rms, signal_settle_s
        Signal acceptance level and how long to wait for it.
    self_test_cycles, self_test_timeout_s
        Bootstrap self-test size and the floor of its per-wait timeout.
    checkpoint_every : int
        Metadata checkpoint cadence in iterations.
    browser : str
        Selenium browser.
    headed : bool
        Show the browser window.
    gpu_mode : str
        Browser GPU flags: ``off``, ``safe`` or ``force-d3d11``.
    require_gpu : bool, optional
        Fail the run when WebGL falls back to the SwiftShader software
        renderer.  Unset means ``headed and gpu_mode != "off"``.
    target_config : str
        Name of the target loader config under ``configs/targets``.
    manifest_root : str
        Directory holding ``<pack>/<manifest_name>``.  Relative paths
        resolve against the target's ``app_dir``.
    manifest_name : str
        Manifest file name inside each pack directory.
    output_dir : str, optional
        Run directory (``trials.log``, ``meta.json``, ``run.log``).
    seed : int, optional
        Seed of the priority-order shuffle.
    """

    packs: list[str] = field(default_factory=list)
    pick: str = "random"
    coverage: float = 0.99
    target_samples: int = 0
    max_hours: float = 10.0
    reload_every: int = 800
    resume: bool = False

    # Timeouts
    trial_timeout_s: float = 10.0
    nav_timeout_s: float = 30.0
    ready_timeout_s: float = 60.0
    nav_attempts: int = 4
    nav_backoff_s: float = 0.6

    # Recovery budgets
    stuck_max_consecutive: int = 3
    max_recoveries: int = 6
    max_restarts: int = 20

    # Heuristics
    luma_min: float = 0.06
    luma_max: float = 0.96
    motion_min: float = 0.000015

    # Telemetry window
    sample_interval_s: float = 0.25
    warmup_samples: int = 2
    measure_samples: int = 6

    # Signal
    audio_mode: str = "auto"
    audio_file: Optional[str] = None
    require_signal: bool = False
    min_signal_rms: float = 0.0005
    signal_settle_s: float = 1.2

    # Bootstrap self-test
    self_test_cycles: int = 2
    self_test_timeout_s: float = 30.0

    checkpoint_every: int = 50

    # Collaborators
    browser: str = "chrome"
    headed: bool = False
    gpu_mode: str = "safe"
    require_gpu: Optional[bool] = None
    target_config: str = "coupled-viz"
    manifest_root: str = "public/presets"
    manifest_name: str = "pairs-manifest.v0.json"
    output_dir: Optional[str] = None
    seed: Optional[int] = None

    def validate(self) -> list[str]:
        """Check choices and clamp numeric ranges in place.

        Returns
        -------
        list[str]
            Warnings for values that were adjusted.

        Raises
        ------
        ValueError
            For values that cannot be repaired (unknown pick strategy,
            no packs, ...).
        """
        warnings: list[str] = []

        packs: list[str] = []
        for pack in self.packs:
            pack = str(pack).strip()
            if pack and pack not in packs:
                packs.append(pack)
        if not packs:
            raise ValueError("At least one pack is required")
        self.packs = packs

        self.pick = self.pick.strip().lower()
        if self.pick not in PICK_STRATEGIES:
            raise ValueError(f"Invalid pick {self.pick!r}. Expected one of {PICK_STRATEGIES}")
        if self.audio_mode not in AUDIO_MODES:
            raise ValueError(
                f"Invalid audio_mode {self.audio_mode!r}. Expected one of {AUDIO_MODES}"
            )
        if self.audio_mode == "file" and not self.audio_file:
            raise ValueError("audio_mode 'file' requires audio_file")
        if self.gpu_mode not in GPU_MODES:
            raise ValueError(f"Invalid gpu_mode {self.gpu_mode!r}. Expected one of {GPU_MODES}")
        if self.require_gpu is None:
            self.require_gpu = self.headed and self.gpu_mode != "off"

        if not MIN_COVERAGE <= self.coverage <= MAX_COVERAGE:
            clamped = min(MAX_COVERAGE, max(MIN_COVERAGE, self.coverage))
            warnings.append(f"coverage {self.coverage} clamped to {clamped}")
            self.coverage = clamped
        if self.max_hours <= 0:
            raise ValueError(f"max_hours must be positive, got {self.max_hours}")

        self.target_samples = max(0, int(self.target_samples))
        self.reload_every = max(0, int(self.reload_every))
        self.sample_interval_s = min(5.0, max(0.0, self.sample_interval_s))
        self.warmup_samples = min(20, max(0, int(self.warmup_samples)))
        self.measure_samples = min(60, max(1, int(self.measure_samples)))
        self.nav_attempts = max(1, int(self.nav_attempts))
        self.stuck_max_consecutive = max(1, int(self.stuck_max_consecutive))
        self.max_recoveries = max(0, int(self.max_recoveries))
        self.max_restarts = max(0, int(self.max_restarts))
        self.self_test_cycles = max(0, int(self.self_test_cycles))
        self.checkpoint_every = max(1, int(self.checkpoint_every))

        for timeout_name in ("trial_timeout_s", "nav_timeout_s", "ready_timeout_s"):
            if getattr(self, timeout_name) <= 0:
                raise ValueError(f"{timeout_name} must be positive")

        for warning in warnings:
            logger.warning("Config: %s", warning)
        return warnings

    @property
    def telemetry_window(self) -> TelemetryWindow:
        return TelemetryWindow(
            interval_s=self.sample_interval_s,
            warmup=self.warmup_samples,
            measure=self.measure_samples,
        )


def clamp_max_hours(max_hours: float) -> tuple[float, bool]:
    """Return ``(effective_hours, clamped)`` for a requested budget."""
    if max_hours < MIN_MAX_HOURS:
        return MIN_MAX_HOURS, True
    return max_hours, False


_TRUE_WORDS = ("1", "true", "yes", "on")
_FALSE_WORDS = ("0", "false", "no", "off")


def _coerce_scalar(name: str, value: Any, type_name: str, source: Path) -> Any:
    """Convert a YAML value to the field's scalar type.

    Env-var expansion always yields strings (``coverage: ${COV:-0.9}``),
    so numeric and boolean fields accept their string spelling.
    """
    kind = type_name.removeprefix("Optional[").removesuffix("]")
    if value is None or kind not in ("bool", "int", "float"):
        return value
    if kind == "bool":
        if isinstance(value, bool):
            return value
        word = str(value).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"Invalid {name} in {source}: expected a boolean, got {value!r}")

    if isinstance(value, bool):
        raise ValueError(f"Invalid {name} in {source}: expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {name} in {source}: expected a number, got {value!r}") from exc
    if kind == "int":
        if not number.is_integer():
            raise ValueError(f"Invalid {name} in {source}: expected an integer, got {value!r}")
        return int(number)
    return number


def load_sampler_config(path: str | Path) -> SamplerConfig:
    """Load a :class:`SamplerConfig` from a YAML file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the YAML contains unknown fields or invalid values.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"No sampler config found at {config_path}")

    logger.info("Loading sampler config from %s", config_path)
    raw = read_yaml_mapping(config_path)

    valid_fields = {f.name for f in dataclasses.fields(SamplerConfig)}
    unknown = set(raw) - valid_fields
    if unknown:
        raise ValueError(
            f"Unknown fields in {config_path}: {sorted(unknown)}. "
            f"Valid fields: {sorted(valid_fields)}"
        )
    if isinstance(raw.get("packs"), str):
        raw["packs"] = [p for p in raw["packs"].split(",")]

    field_types = {f.name: str(f.type) for f in dataclasses.fields(SamplerConfig)}
    raw = {
        name: _coerce_scalar(name, value, field_types[name], config_path)
        for name, value in raw.items()
    }

    try:
        return SamplerConfig(**raw)
    except TypeError as exc:
        raise ValueError(f"Invalid config in {config_path}: {exc}") from exc


def apply_overrides(config: SamplerConfig, overrides: dict[str, Any]) -> SamplerConfig:
    """Return a copy of *config* with every non-``None`` override applied."""
    valid_fields = {f.name for f in dataclasses.fields(SamplerConfig)}
    unknown = set(overrides) - valid_fields
    if unknown:
        raise ValueError(f"Unknown config overrides: {sorted(unknown)}")
    changes = {k: v for k, v in overrides.items() if v is not None}
    return dataclasses.replace(config, **changes)
