"""Trial loop: one action, one observation, one record.

Per iteration: wait for the action trigger, act, wait for a new pick
marker, wait for the applied identifiers to match the pick, validate
the pick against the manifest, sample telemetry, derive heuristic
reasons, append the record and count the visit.  Every bounded wait of
a trial uses the same timeout.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.driver.base import (
    ACTION_NEXT,
    DriverError,
    DriverFailure,
    StateSnapshot,
    TargetDriver,
    TelemetrySample,
)
from src.sampler.config import SamplerConfig
from src.sampler.coverage import CoverageTracker
from src.sampler.failures import DataIntegrityError, TrialTimeoutError
from src.sampler.manifest import PackManifest
from src.sampler.persistence import TrialLog
from src.sampler.records import TrialRecord

logger = logging.getLogger(__name__)

# Upper bound on waiting for the status line to leave its loading state.
_SETTLE_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class HeuristicThresholds:
    luma_min: float = 0.06
    luma_max: float = 0.96
    motion_min: float = 0.000015

    @classmethod
    def from_config(cls, config: SamplerConfig) -> "HeuristicThresholds":
        return cls(config.luma_min, config.luma_max, config.motion_min)


def heuristic_reasons(
    sample: TelemetrySample,
    page_errors: int,
    console_errors: int,
    thresholds: HeuristicThresholds,
) -> list[str]:
    """Return the reasons a trial looks bad; empty means OK."""
    reasons: list[str] = []
    if page_errors > 0:
        reasons.append("pageerror")
    if console_errors > 0:
        reasons.append("consoleerror")

    if sample.avg_luma is None:
        reasons.append("no-luma")
    else:
        if sample.avg_luma <= thresholds.luma_min:
            reasons.append("too-dark")
        if sample.avg_luma >= thresholds.luma_max:
            reasons.append("too-bright")

    if sample.avg_frame_delta is None:
        reasons.append("no-motion-sample")
    elif sample.avg_frame_delta < thresholds.motion_min:
        reasons.append("low-motion")
    return reasons


def expected_ids(pack_id: str, trial_id: int) -> tuple[str, str]:
    """Identifiers the target applies for *trial_id* of *pack_id*."""
    return f"coupled:{pack_id}:{trial_id}:fg", f"coupled:{pack_id}:{trial_id}:bg"


class TrialLoop:
    """Run trials of one pack against a driver.

    Parameters
    ----------
    driver : TargetDriver
        Target driver.
    manifest : PackManifest
        Manifest of the pack; observed ids must belong to it.
    coverage : CoverageTracker
        Receives a visit for every appended record.
    trial_log : TrialLog
        Destination of records.
    config : SamplerConfig
        Timeouts, thresholds, window and reload cadence.
    soft_reset : callable, optional
        Called before acting every ``config.reload_every`` iterations.
    clock : callable
        Wall clock in seconds, injected for tests.
    """

    def __init__(
        self,
        driver: TargetDriver,
        manifest: PackManifest,
        coverage: CoverageTracker,
        trial_log: TrialLog,
        config: SamplerConfig,
        soft_reset: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.driver = driver
        self.manifest = manifest
        self.coverage = coverage
        self.trial_log = trial_log
        self.config = config
        self.soft_reset = soft_reset
        self.thresholds = HeuristicThresholds.from_config(config)
        self._clock = clock
        self.iteration = 0

    @property
    def pack_id(self) -> str:
        return self.manifest.pack_id

    # -- Bounded waits -------------------------------------------------

    def _wait(
        self,
        predicate: Callable[[StateSnapshot], bool],
        timeout_s: float,
        what: str,
        phase: str,
    ) -> StateSnapshot:
        try:
            return self.driver.wait_for(predicate, timeout_s, what)
        except DriverError as exc:
            if exc.reason is DriverFailure.TIMEOUT:
                raise TrialTimeoutError(phase, f"[{self.pack_id}] {exc.message}") from exc
            raise

    def advance(self, timeout_s: Optional[float] = None) -> StateSnapshot:
        """One action-observation cycle; return the settled snapshot.

        Shared by the trial loop and the bootstrap self-test.

        Raises
        ------
        TrialTimeoutError
            If the trigger, the new pick or the applied ids do not
            show up in time, or the pick has no id of this pack.
        """
        timeout_s = timeout_s or self.config.trial_timeout_s
        prev_marker = self.driver.observe().last_action_time_ms

        self._wait(lambda s: bool(s.action_enabled), timeout_s, "action trigger", "button")
        self.driver.act(ACTION_NEXT)

        snap = self._wait(
            lambda s: s.last_action_time_ms is not None and s.last_action_time_ms != prev_marker,
            timeout_s,
            "new pick",
            "pick",
        )
        trial_id = snap.last_trial_id
        if trial_id is None or snap.pack_id != self.pack_id:
            raise TrialTimeoutError(
                "pick",
                f"[{self.pack_id}] pick resolved without a pair of this pack "
                f"(pack={snap.pack_id!r}, pair={trial_id!r})",
            )

        fg_id, bg_id = expected_ids(self.pack_id, trial_id)
        return self._wait(
            lambda s: s.applied_fg_id == fg_id and s.applied_bg_id == bg_id,
            timeout_s,
            f"preset ids of pair {trial_id}",
            "presetIds",
        )

    def _settle(self, snap: StateSnapshot) -> StateSnapshot:
        if not snap.is_loading:
            return snap
        try:
            return self.driver.wait_for(
                lambda s: not s.is_loading,
                min(self.config.trial_timeout_s, _SETTLE_TIMEOUT_S),
                "status settle",
            )
        except DriverError as exc:
            if exc.reason is not DriverFailure.TIMEOUT:
                raise
            logger.debug("[%s] Status still loading, sampling anyway", self.pack_id)
            return snap

    # -- Trial -----------------------------------------------------------

    def run_trial(self) -> TrialRecord:
        """Run one iteration and return the appended record.

        Raises
        ------
        TrialTimeoutError
            On any expired wait (transient).
        DataIntegrityError
            If the observed pair is not in the manifest.  Nothing is
            written for that trial.
        DriverError
            For any other driver failure.
        """
        self.iteration += 1
        reload_every = self.config.reload_every
        if self.soft_reset is not None and reload_every and self.iteration % reload_every == 0:
            logger.info("[%s] Periodic reload at iter %d", self.pack_id, self.iteration)
            self.soft_reset()

        snap = self._settle(self.advance())
        trial_id = snap.last_trial_id
        if trial_id is None or not self.manifest.contains(trial_id):
            raise DataIntegrityError(
                f"MANIFEST_MISMATCH: pair={trial_id} not in manifest "
                f"({self.manifest.path.name}, {len(self.manifest.allowed_ids)} pairs). "
                "The target may have loaded a different manifest."
            )

        sample = self.driver.sample_telemetry(self.config.telemetry_window)
        page_errors, console_errors = self.driver.drain_error_counts()
        reasons = heuristic_reasons(sample, page_errors, console_errors, self.thresholds)

        record = TrialRecord(
            timestamp_ms=int(self._clock() * 1000),
            pack_id=self.pack_id,
            trial_id=trial_id,
            warp_diff=snap.warp_diff,
            cx_diff=snap.cx_diff,
            quality01=snap.quality01,
            intensity01=snap.intensity01,
            preset_fg_id=snap.applied_fg_id,
            preset_bg_id=snap.applied_bg_id,
            viz_avg_luma=sample.avg_luma,
            viz_avg_frame_delta=sample.avg_frame_delta,
            pm_avg_luma_fg=snap.pm_avg_luma_fg,
            pm_avg_luma_bg=snap.pm_avg_luma_bg,
            audio_rms=snap.signal_rms,
            audio_peak=snap.signal_peak,
            page_errors_since_last=page_errors,
            console_errors_since_last=console_errors,
            ok_heuristic=not reasons,
            reasons=tuple(reasons),
        )
        self.trial_log.append(record)
        is_new = self.coverage.record_visit(self.pack_id, trial_id)

        pack = self.coverage.pack(self.pack_id)
        label = self.manifest.preset_label(trial_id)
        logger.debug(
            "[%s] iter=%d pair=%d%s%s visited=%d/%d reasons=%s",
            self.pack_id,
            self.iteration,
            trial_id,
            f" [{label}]" if label else "",
            " (new)" if is_new else "",
            len(pack.visited),
            pack.target,
            ",".join(reasons) or "-",
        )
        return record
