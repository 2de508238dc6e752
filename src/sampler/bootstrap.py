"""Bootstrap protocol: bring a fresh connection to a samplable state.

Run once per (re)connection, each step bounded by its own timeout:

1. preflight the origin, then navigate with retries (falling back to
   the alternate loopback host);
2. wait for the interactive surface and the verify hooks;
3. re-assert operating flags;
4. enter the pack's sampling mode and wait for the pack identity;
5. seed the priority order (``shuffle`` pick with prior visits);
6. establish the audio signal;
7. check the WebGL renderer (SwiftShader is fatal when a GPU is required);
8. self-test: a few full trial cycles through :meth:`TrialLoop.advance`.

Steps 2-8 raise :class:`BootstrapError` wrapping the underlying cause.
"""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl

from src.driver.base import (
    DriverError,
    DriverFailure,
    RendererInfo,
    SignalCheck,
    SignalKind,
    SignalSource,
    TargetDriver,
)
from src.sampler.config import SamplerConfig
from src.sampler.coverage import CoverageTracker
from src.sampler.failures import (
    BootstrapError,
    ErrorCode,
    InfraFatalError,
    RunFatalError,
    SignalLostError,
)
from src.sampler.records import TimingStats
from src.sampler.retry import retry_call
from src.sampler.trial import TrialLoop

logger = logging.getLogger(__name__)

_DEFAULT_MANIFEST_NAME = "pairs-manifest.v0.json"
_LOOPBACK_SWAP = {"127.0.0.1": "localhost", "localhost": "127.0.0.1"}


def pack_url(base_url: str, pack_id: str, pick: str, manifest_name: str) -> str:
    """Target URL that opens *pack_id* in coupled sampling mode."""
    parsed = urlparse(base_url)
    query = dict(parse_qsl(parsed.query))
    query.update(
        {
            "coupled": "1",
            "coupledPack": pack_id,
            "coupledPick": pick,
            "coupling3d": "on",
        }
    )
    if manifest_name and manifest_name != _DEFAULT_MANIFEST_NAME:
        query["coupledManifest"] = manifest_name
    return urlunparse(parsed._replace(query=urlencode(query)))


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/"


def alternate_host_url(url: str) -> Optional[str]:
    """Swap ``127.0.0.1`` and ``localhost``; ``None`` for other hosts."""
    parsed = urlparse(url)
    host = parsed.hostname or ""
    alt = _LOOPBACK_SWAP.get(host)
    if alt is None:
        return None
    netloc = alt if parsed.port is None else f"{alt}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


class BootstrapProtocol:
    """Execute the bootstrap steps against a driver.

    Parameters
    ----------
    driver : TargetDriver
        Target driver (already connected).
    config : SamplerConfig
        Timeouts, pick strategy and signal settings.
    preflight : callable
        ``preflight(url) -> bool`` liveness probe of the target origin.
    timing : TimingStats
        Navigation and signal counters are accumulated here.
    rng : random.Random, optional
        Source of the priority-order shuffle.
    sleep, clock : callable
        Injected for tests.
    """

    def __init__(
        self,
        driver: TargetDriver,
        config: SamplerConfig,
        preflight: Callable[[str], bool],
        timing: TimingStats,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.config = config
        self.preflight = preflight
        self.timing = timing
        self.rng = rng or random.Random(config.seed)
        self._sleep = sleep
        self._clock = clock
        self.renderer: Optional[RendererInfo] = None

    # -- Entry point ---------------------------------------------------

    def run(self, url: str, loop: TrialLoop, coverage: CoverageTracker) -> str:
        """Bootstrap *loop*'s pack at *url*; return the URL actually loaded.

        Raises
        ------
        InfraFatalError
            If the origin does not answer the preflight.
        BootstrapError
            If any later step fails.
        """
        pack_id = loop.pack_id
        logger.info("[%s] Bootstrap: %s", pack_id, url)
        loaded = self.navigate(url, pack_id)

        self._step("readiness", self._await_ready, pack_id)
        self._step("flags", self.driver.set_flags)
        self._step("pack", self._init_pack, pack_id)
        if self.config.pick == "shuffle" and coverage.visited(pack_id):
            self._step("seed", self._seed, pack_id, loop, coverage)
        self._step("signal", self.establish_signal, pack_id)
        self._step("webgl", self.check_renderer, pack_id)
        self._step("self-test", self._self_test, loop)

        logger.info("[%s] Bootstrap complete", pack_id)
        return loaded

    def _step(self, name: str, fn: Callable[..., object], *args: object) -> None:
        try:
            fn(*args)
        except (BootstrapError, RunFatalError):
            raise
        except Exception as exc:
            raise BootstrapError(name, exc) from exc

    # -- Step 1: navigation ------------------------------------------

    def navigate(self, url: str, pack_id: str) -> str:
        origin = origin_of(url)
        ok = bool(self.preflight(origin))
        self.timing.record_preflight(origin, ok)
        if not ok:
            raise InfraFatalError(f"Target origin {origin} did not answer the preflight probe")

        def _count(_attempt: int, exc: BaseException) -> None:
            if isinstance(exc, DriverError) and exc.reason is DriverFailure.TIMEOUT:
                self.timing.nav_timeouts += 1

        def _retryable(exc: BaseException) -> bool:
            return isinstance(exc, DriverError) and exc.reason is not DriverFailure.CLOSED

        started = self._clock()
        try:
            retry_call(
                lambda: self.driver.navigate(url, self.config.nav_timeout_s),
                attempts=self.config.nav_attempts,
                backoff_s=self.config.nav_backoff_s,
                should_retry=_retryable,
                on_failure=_count,
                sleep=self._sleep,
                what=f"[{pack_id}] navigation",
            )
            return url
        except DriverError as exc:
            if exc.reason is DriverFailure.CLOSED:
                raise
            alt = alternate_host_url(url)
            if alt is None:
                logger.warning("[%s] Navigation failed (%s); checking readiness anyway", pack_id, exc)
                return url
            logger.warning("[%s] Navigation failed (%s); trying %s", pack_id, exc, alt)
            try:
                self.driver.navigate(alt, self.config.nav_timeout_s)
                return alt
            except DriverError as alt_exc:
                if alt_exc.reason is DriverFailure.CLOSED:
                    raise
                _count(0, alt_exc)
                logger.warning(
                    "[%s] Alternate host failed too (%s); checking readiness anyway",
                    pack_id,
                    alt_exc,
                )
                return url
        finally:
            self.timing.nav_total_s = round(self.timing.nav_total_s + self._clock() - started, 3)

    # -- Steps 2-4 -----------------------------------------------------

    def _await_ready(self, pack_id: str) -> None:
        timeout = self.config.ready_timeout_s
        self.driver.wait_for(lambda s: bool(s.ready), timeout, "interactive surface")
        self.driver.wait_for(lambda s: bool(s.hooks_ready), timeout, "verify hooks")
        logger.debug("[%s] Surface and verify hooks ready", pack_id)

    def _init_pack(self, pack_id: str) -> None:
        self.driver.init_pack(pack_id)
        try:
            self.driver.wait_for(
                lambda s: s.pack_active(pack_id),
                self.config.ready_timeout_s,
                f"pack {pack_id} enabled",
            )
        except DriverError as exc:
            if exc.reason is not DriverFailure.TIMEOUT:
                raise
            snap = self.driver.observe()
            logger.warning(
                "[%s] Pack identity not confirmed (pack=%r enabled=%r); self-test will decide",
                pack_id,
                snap.pack_id,
                snap.pack_enabled,
            )

    # -- Step 5 ----------------------------------------------------------

    def _seed(self, pack_id: str, loop: TrialLoop, coverage: CoverageTracker) -> None:
        order = coverage.priority_order(pack_id, loop.manifest.ids_by_index, self.rng)
        missing = len(order) - sum(
            1 for pid in loop.manifest.ids_by_index if pid in coverage.visited(pack_id)
        )
        self.driver.seed_order(pack_id, order, reason="eval:resume")
        logger.info(
            "[%s] Seeded pick order: %d missing first of %d", pack_id, missing, len(order)
        )

    # -- Step 6: signal --------------------------------------------------

    def signal_sources(self) -> list[SignalSource]:
        """Sources to try, in order, for the configured audio mode."""
        cfg = self.config
        common = dict(min_rms=cfg.min_signal_rms, settle_s=cfg.signal_settle_s)
        file_source = (
            SignalSource(SignalKind.FILE, Path(cfg.audio_file), **common)
            if cfg.audio_file
            else None
        )
        synthetic = SignalSource(SignalKind.SYNTHETIC, **common)
        if cfg.audio_mode == "file":
            return [file_source] if file_source else []
        if cfg.audio_mode == "synthetic":
            return [synthetic]
        if cfg.audio_mode == "auto":
            return [file_source, synthetic] if file_source else [synthetic]
        return []

    def establish_signal(self, pack_id: str) -> Optional[SignalCheck]:
        """Drive the first source that yields a live level.

        Raises
        ------
        SignalLostError
            If every source stays below ``min_signal_rms``.
        RunFatalError
            If a signal is required but the audio mode is ``none``.
        """
        if self.config.audio_mode == "none":
            if self.config.require_signal:
                raise RunFatalError(
                    ErrorCode.SIGNAL, "A signal is required but audio mode is 'none'"
                )
            logger.info("[%s] Audio disabled, skipping signal", pack_id)
            return None

        last: Optional[SignalCheck] = None
        for source in self.signal_sources():
            self.timing.signal_checks += 1
            check = self.driver.drive_signal(source)
            if check.ok:
                logger.info(
                    "[%s] Signal ok via %s (rms=%.4f)", pack_id, check.source, check.rms or 0.0
                )
                return check
            self.timing.signal_failures += 1
            logger.warning("[%s] Signal via %s failed: %s", pack_id, check.source, check.detail)
            last = check

        raise SignalLostError(
            f"[{pack_id}] no usable signal"
            + (f" (last: {last.source}, rms={last.rms}, {last.detail})" if last else "")
        )

    # -- Step 7: renderer ------------------------------------------------

    def check_renderer(self, pack_id: str) -> Optional[RendererInfo]:
        """Record the WebGL renderer; refuse SwiftShader when a GPU is required.

        Query failures other than a lost session are logged and ignored.

        Raises
        ------
        RunFatalError
            ``FATAL_WEBGL_SWIFTSHADER`` when ``require_gpu`` is set, the
            GPU is enabled and the renderer is the software fallback.
        """
        try:
            info = self.driver.renderer_info()
        except DriverError as exc:
            if exc.reason is DriverFailure.CLOSED:
                raise
            logger.warning("[%s] WebGL renderer query failed: %s", pack_id, exc)
            return None
        self.renderer = info
        logger.info("[%s] WebGL: %s", pack_id, info.to_dict())

        if self.config.gpu_mode == "off" or not info.is_software:
            return info
        message = f"WebGL renderer is {info.renderer!r}; the browser fell back to software"
        if self.config.require_gpu:
            raise RunFatalError(ErrorCode.WEBGL_SWIFTSHADER, message)
        logger.warning("[%s] %s; heuristics will be unreliable", pack_id, message)
        return info

    # -- Step 8 ----------------------------------------------------------

    def _self_test(self, loop: TrialLoop) -> None:
        timeout = max(self.config.trial_timeout_s, self.config.self_test_timeout_s)
        for cycle in range(1, self.config.self_test_cycles + 1):
            snap = loop.advance(timeout)
            logger.info(
                "[%s] Self-test %d/%d ok: pair=%s",
                loop.pack_id,
                cycle,
                self.config.self_test_cycles,
                snap.last_trial_id,
            )
        # Self-test picks are not records; drop their error counts.
        self.driver.drain_error_counts()

    # -- Soft reset ------------------------------------------------------

    def soft_reset(self, pack_id: str) -> None:
        """Reload within the same session and restore the sampling state."""
        logger.info("[%s] Soft reset: reloading page", pack_id)
        self.driver.reload(self.config.nav_timeout_s)
        self._await_ready(pack_id)
        self.driver.set_flags()
        self.establish_signal(pack_id)
        self.driver.wait_for(
            lambda s: s.pack_active(pack_id),
            self.config.ready_timeout_s,
            f"pack {pack_id} enabled after reload",
        )
        self.driver.drain_error_counts()
