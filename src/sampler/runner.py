"""Run controller: the multi-pack sampling lifecycle.

Validates manifests, builds (or merges, on resume) the run metadata,
replays the trial log, opens the session and then, per pack: skip when
the deadline has passed or the pack is already done, otherwise
bootstrap and run trials until the pack is done or the deadline hits.
Failures go through the :class:`RecoveryController`; whatever escapes
it is fatal and ends the run with ``meta.error`` written.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from src.driver.base import TargetDriver
from src.sampler.bootstrap import BootstrapProtocol, pack_url
from src.sampler.config import SamplerConfig, clamp_max_hours
from src.sampler.coverage import CoverageTracker
from src.sampler.failures import (
    ErrorCode,
    RunFatalError,
    classify,
    describe,
    error_code,
    is_fatal,
)
from src.sampler.manifest import PackManifest, load_manifest
from src.sampler.persistence import (
    META_FILE,
    TRIALS_LOG,
    MetadataStore,
    ResumeState,
    TrialLog,
    existing_run_files,
    load_progress,
)
from src.sampler.records import (
    PackProgress,
    RunError,
    RunMetadata,
    iso_from_epoch,
    utc_now_iso,
)
from src.sampler.recovery import RecoveryController
from src.sampler.session import SessionManager
from src.sampler.trial import TrialLoop

logger = logging.getLogger(__name__)

DEADLINE_SKIP_REASON = "deadline exhausted"


class RunController:
    """Drive a complete sampling run.

    Parameters
    ----------
    config : SamplerConfig
        Run settings.  Validated on construction.
    driver : TargetDriver
        Target driver; connected by the controller.
    output_dir : str or Path
        Run directory for ``trials.log`` and ``meta.json``.
    base_url : str
        Base URL of the served target.
    preflight : callable
        ``preflight(url) -> bool`` origin liveness probe.
    manifests : dict[str, PackManifest], optional
        Pre-loaded manifests; otherwise read from ``manifest_root``.
    manifest_root : str or Path, optional
        Directory with ``<pack>/<manifest_name>``.  Defaults to
        ``config.manifest_root``.
    clock, sleep : callable
        Wall clock and sleep, injected for tests.
    rng : random.Random, optional
        Source of the priority-order shuffle.
    warnings : list[str], optional
        Warnings from an earlier validation of *config*, kept in
        ``meta.json``.
    """

    def __init__(
        self,
        config: SamplerConfig,
        driver: TargetDriver,
        output_dir: str | Path,
        base_url: str,
        preflight: Callable[[str], bool],
        manifests: Optional[dict[str, PackManifest]] = None,
        manifest_root: str | Path | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        warnings: Optional[list[str]] = None,
    ) -> None:
        self.config = config
        self.warnings = list(warnings or []) + config.validate()
        self.driver = driver
        self.output_dir = Path(output_dir)
        self.base_url = base_url
        self.manifests: dict[str, PackManifest] = dict(manifests or {})
        self.manifest_root = Path(manifest_root or config.manifest_root)
        self._clock = clock

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.store = MetadataStore(self.output_dir / META_FILE)
        self.trial_log = TrialLog(self.output_dir / TRIALS_LOG)
        self.coverage = CoverageTracker()
        self.meta = RunMetadata(run_id=uuid.uuid4().hex[:12])

        self.session = SessionManager(driver, timing=self.meta.timing)
        self.recovery = RecoveryController(
            self.session,
            stuck_max_consecutive=config.stuck_max_consecutive,
            max_recoveries=config.max_recoveries,
            max_restarts=config.max_restarts,
        )
        self.bootstrap = BootstrapProtocol(
            driver,
            config,
            preflight=preflight,
            timing=self.meta.timing,
            rng=rng,
            sleep=sleep,
        )

        self.deadline: Optional[float] = None
        self._run_started: Optional[float] = None
        self._elapsed_base = 0.0
        self._phase = "init"
        self._pack: Optional[str] = None
        self._loop: Optional[TrialLoop] = None
        self._pack_started: Optional[float] = None
        self._sampled_packs: list[str] = []

    # -- Public API ----------------------------------------------------

    def run(self) -> int:
        """Run every pack.  Returns ``0`` on completion, ``1`` on fatal error."""
        try:
            self._prepare()
            self._phase = "session"
            self.session.open("run start")
            self._start_budget()

            for pack_id in self.config.packs:
                self._run_pack(pack_id)

            self._phase = "finish"
            self._check_samples()
        except Exception as exc:
            return self._fail(exc)
        finally:
            self._close_session()

        self.meta.finished_at = utc_now_iso()
        self._update_elapsed()
        self._write_meta()
        logger.info(
            "Run complete: %s",
            ", ".join(
                f"{p}={len(self.coverage.visited(p))}/{self.coverage.pack(p).target}"
                for p in self.config.packs
            ),
        )
        return 0

    # -- Setup -----------------------------------------------------------

    def _prepare(self) -> None:
        cfg = self.config
        existing = existing_run_files(self.output_dir)
        if existing and not cfg.resume:
            logger.warning(
                "Output dir already has %s; appending without --resume (visited sets start empty)",
                ", ".join(p.name for p in existing),
            )

        self._phase = "manifest"
        for pack_id in cfg.packs:
            if pack_id not in self.manifests:
                self.manifests[pack_id] = load_manifest(
                    self.manifest_root, pack_id, cfg.manifest_name
                )

        self._phase = "resume"
        resume_state = ResumeState()
        if cfg.resume:
            previous = self.store.load()
            if previous is not None:
                self.meta.merge_previous(previous)
                self.session.timing = self.meta.timing
                self.bootstrap.timing = self.meta.timing
                self._elapsed_base = float(self.meta.timing.elapsed_s or 0.0)
                logger.info("Resuming run %s started %s", self.meta.run_id, self.meta.started_at)
            resume_state = load_progress(self.output_dir / TRIALS_LOG)

        for pack_id in cfg.packs:
            manifest = self.manifests[pack_id]
            cov = self.coverage.register_pack(
                pack_id,
                total=manifest.pair_count,
                ratio=cfg.coverage,
                target_samples=cfg.target_samples,
                visited=resume_state.visited(pack_id),
                samples=resume_state.lines_by_pack.get(pack_id, 0),
            )
            stray = cov.visited - manifest.allowed_ids
            if stray:
                logger.warning(
                    "[%s] %d replayed pair ids are not in the manifest", pack_id, len(stray)
                )
            self.meta.packs[pack_id] = {
                **manifest.summary(),
                "target": cov.target,
                "targetMode": cov.mode,
            }
            self.meta.progress[pack_id] = PackProgress(
                visited=len(cov.visited),
                target=cov.target,
                target_mode=cov.mode,
                done=cov.done,
            )

        effective, clamped = clamp_max_hours(cfg.max_hours)
        warnings = list(self.warnings)
        if clamped:
            logger.warning(
                "max_hours %.3f too small for a restart-prone run; using %.2f",
                cfg.max_hours,
                effective,
            )
            warnings.append("max_hours_too_small_for_restart_prone_flow")
        self.meta.warnings = warnings
        self.meta.budget = {
            "maxHoursInput": cfg.max_hours,
            "maxHoursEffective": effective,
            "clamped": clamped,
            "deadline": None,
        }
        self.meta.limits = {
            "coverage": cfg.coverage,
            "targetSamples": cfg.target_samples,
            "reloadEvery": cfg.reload_every,
            "pick": cfg.pick,
        }
        self.meta.timeouts = {
            "trialTimeoutS": cfg.trial_timeout_s,
            "navTimeoutS": cfg.nav_timeout_s,
            "readyTimeoutS": cfg.ready_timeout_s,
            "navAttempts": cfg.nav_attempts,
        }
        self.meta.sample = {
            "intervalS": cfg.sample_interval_s,
            "warmupSamples": cfg.warmup_samples,
            "measureSamples": cfg.measure_samples,
        }
        self.meta.recovery = {
            "stuckMaxConsecutive": cfg.stuck_max_consecutive,
            "maxRecoveries": cfg.max_recoveries,
            "maxRestarts": cfg.max_restarts,
        }
        self.meta.heuristic = {
            "lumaMin": cfg.luma_min,
            "lumaMax": cfg.luma_max,
            "motionMin": cfg.motion_min,
        }
        self.meta.runtime = {
            "gpuMode": cfg.gpu_mode,
            "headed": cfg.headed,
            "requireGpu": cfg.require_gpu,
            "webgl": None,
        }
        self._write_meta()

    def _start_budget(self) -> None:
        hours = self.meta.budget["maxHoursEffective"]
        self._run_started = self._clock()
        self.deadline = self._run_started + hours * 3600.0
        self.meta.budget["deadline"] = iso_from_epoch(self.deadline)
        self.meta.timing.sampling_started_at = iso_from_epoch(self._run_started)
        logger.info("Budget %.2fh, deadline %s", hours, self.meta.budget["deadline"])

    def _deadline_passed(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    # -- Per pack ----------------------------------------------------------

    def _run_pack(self, pack_id: str) -> None:
        self._pack = pack_id
        self._loop = None
        progress = self.meta.progress[pack_id]
        cov = self.coverage.pack(pack_id)

        if self._deadline_passed():
            progress.skipped = DEADLINE_SKIP_REASON
            logger.warning("[%s] Skipping pack: %s", pack_id, DEADLINE_SKIP_REASON)
            self._checkpoint()
            return

        if cov.done:
            progress.done = True
            logger.info(
                "[%s] already-done visited=%d/%d; skipping sampling",
                pack_id,
                len(cov.visited),
                cov.target,
            )
            self._checkpoint()
            return

        protocol = self.bootstrap
        manifest = self.manifests[pack_id]
        url = pack_url(self.base_url, pack_id, self.config.pick, self.config.manifest_name)

        def soft_reset() -> None:
            protocol.soft_reset(pack_id)

        loop = TrialLoop(
            self.driver,
            manifest,
            self.coverage,
            self.trial_log,
            self.config,
            soft_reset=soft_reset,
            clock=self._clock,
        )

        def run_bootstrap() -> None:
            protocol.run(url, loop, self.coverage)

        self._loop = loop
        self._pack_started = self._clock()
        self._sampled_packs.append(pack_id)
        logger.info(
            "[%s] Sampling: %d pairs, target %d (%s), visited %d",
            pack_id,
            manifest.pair_count,
            cov.target,
            cov.mode,
            len(cov.visited),
        )

        self._phase = "bootstrap"
        self.recovery.bootstrap(run_bootstrap, f"pack {pack_id}")

        self._phase = "trial"
        while not cov.done:
            if self._deadline_passed():
                logger.warning(
                    "[%s] Deadline reached at iter %d (visited %d/%d)",
                    pack_id,
                    loop.iteration,
                    len(cov.visited),
                    cov.target,
                )
                break
            try:
                loop.run_trial()
                self.recovery.on_success()
            except Exception as exc:
                if is_fatal(classify(exc)):
                    raise
                self._phase = "recovery"
                self.recovery.handle(exc, soft_reset=soft_reset, run_bootstrap=run_bootstrap)
                self._phase = "trial"

            if loop.iteration % self.config.checkpoint_every == 0:
                self._update_progress()
                self._checkpoint()
                logger.info(
                    "[%s] iter=%d visited=%d/%d elapsedMin=%.1f session=%d",
                    pack_id,
                    loop.iteration,
                    len(cov.visited),
                    cov.target,
                    progress.elapsed_min or 0.0,
                    self.session.generation,
                )

        self._update_progress()
        progress.done = cov.done
        logger.info(
            "[%s] Pack %s: iter=%d visited=%d/%d",
            pack_id,
            "done" if cov.done else "stopped",
            loop.iteration,
            len(cov.visited),
            cov.target,
        )
        self._checkpoint()

    def _check_samples(self) -> None:
        for pack_id in self._sampled_packs:
            cov = self.coverage.pack(pack_id)
            if cov.target > 0 and not cov.visited:
                self._pack = pack_id
                raise RunFatalError(
                    ErrorCode.NO_SAMPLES,
                    f"[{pack_id}] no samples recorded (target {cov.target})",
                )

    # -- Metadata ----------------------------------------------------------

    def _update_progress(self) -> None:
        if self._pack is None or self._loop is None:
            return
        cov = self.coverage.pack(self._pack)
        progress = self.meta.progress[self._pack]
        progress.iter = self._loop.iteration
        progress.visited = len(cov.visited)
        progress.done = cov.done
        if self._pack_started is not None:
            progress.elapsed_min = round((self._clock() - self._pack_started) / 60.0, 1)

    def _update_elapsed(self) -> None:
        if self._run_started is not None:
            self.meta.timing.elapsed_s = round(
                self._elapsed_base + self._clock() - self._run_started, 3
            )

    def _write_meta(self) -> None:
        if self.bootstrap.renderer is not None:
            self.meta.runtime["webgl"] = self.bootstrap.renderer.to_dict()
        self.store.write(self.meta.to_dict())

    def _checkpoint(self) -> None:
        self._update_elapsed()
        self._write_meta()

    # -- Termination -------------------------------------------------------

    def _fail(self, exc: Exception) -> int:
        code = error_code(exc)
        iteration = self._loop.iteration if self._loop is not None else None
        self._update_progress()
        self.meta.error = RunError(
            code=code.value,
            pack=self._pack,
            iter=iteration,
            phase=self._phase,
            message=describe(exc),
        )
        self.meta.finished_at = utc_now_iso()
        self._update_elapsed()
        self._write_meta()
        logger.error(
            "Run failed [%s] pack=%s iter=%s phase=%s: %s",
            code.value,
            self._pack,
            iteration,
            self._phase,
            describe(exc),
            exc_info=code is ErrorCode.UNKNOWN,
        )
        return 1

    def _close_session(self) -> None:
        try:
            self.session.close()
        except Exception:
            logger.warning("Session cleanup failed", exc_info=True)


def record_startup_failure(output_dir: str | Path, exc: BaseException, phase: str) -> ErrorCode:
    """Write ``meta.error`` for a failure before any :class:`RunController` ran.

    Used when the target cannot be served at all.  Identity and timing
    of an earlier attempt in *output_dir* are carried over.
    """
    store = MetadataStore(Path(output_dir) / META_FILE)
    meta = RunMetadata(run_id=uuid.uuid4().hex[:12])
    previous = store.load()
    if previous is not None:
        meta.merge_previous(previous)
    code = error_code(exc)
    meta.error = RunError(code=code.value, pack=None, iter=None, phase=phase, message=describe(exc))
    meta.finished_at = utc_now_iso()
    store.write(meta.to_dict())
    return code
