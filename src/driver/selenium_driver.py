"""Selenium implementation of :class:`TargetDriver`.

Launches an isolated browser (Chrome, Edge or Firefox) with a clean
profile and drives the target through the JS snippets in
:mod:`src.driver.scripts`.  Every Selenium exception is translated to a
:class:`DriverError` whose :class:`DriverFailure` reason is derived
from the exception type (plus a liveness probe for the generic
``WebDriverException``), never from the message text.
"""

from __future__ import annotations

import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from selenium import webdriver
from selenium.common.exceptions import (
    InvalidSessionIdException,
    JavascriptException,
    NoSuchElementException,
    NoSuchWindowException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.common.by import By
from selenium.webdriver.support.ui import WebDriverWait

from src.driver import scripts
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
from src.driver.click_track import write_click_track

logger = logging.getLogger(__name__)

#: Browsers supported by :class:`SeleniumDriver`.
SUPPORTED_BROWSERS = ("chrome", "edge", "firefox")

# How long the audio toggle may take to become clickable after upload.
_AUDIO_TOGGLE_TIMEOUT_S = 10.0


class ErrorCounter:
    """Turn in-page running error totals into per-drain deltas.

    The in-page totals restart from zero on every navigation; a total
    lower than the last one seen is treated as such a restart.
    """

    def __init__(self) -> None:
        self.last_page: int = 0
        self.last_console: int = 0

    def drain(self, page_total: int, console_total: int) -> tuple[int, int]:
        page = page_total - self.last_page if page_total >= self.last_page else page_total
        console = (
            console_total - self.last_console
            if console_total >= self.last_console
            else console_total
        )
        self.last_page, self.last_console = page_total, console_total
        return page, console

    def reset(self) -> None:
        self.last_page = 0
        self.last_console = 0


class SeleniumDriver(TargetDriver):
    """Drive the target in a Selenium-managed browser.

    Parameters
    ----------
    browser : str
        ``"chrome"``, ``"edge"`` or ``"firefox"``.
    headless : bool
        Run without a visible window.
    window_size : tuple[int, int]
        ``(width, height)`` in pixels.
    poll_interval_s : float
        Polling period of :meth:`wait_for`.
    script_timeout_s : float
        Timeout for asynchronous scripts (pack initialization).
    workdir : Path, optional
        Where generated files (the click-track) are written.  A
        temporary directory is used when omitted.
    gpu_mode : str
        Chromium GPU flags: ``"off"`` disables the GPU, ``"safe"``
        enables GPU rasterization, ``"force-d3d11"`` also forces the
        D3D11 ANGLE backend and disables the software fallback.
    """

    def __init__(
        self,
        browser: str = "chrome",
        headless: bool = True,
        window_size: tuple[int, int] = (1280, 720),
        poll_interval_s: float = 0.1,
        script_timeout_s: float = 30.0,
        workdir: Optional[Path] = None,
        gpu_mode: str = "safe",
    ) -> None:
        if browser not in SUPPORTED_BROWSERS:
            raise ValueError(
                f"Unknown browser {browser!r}. Supported: {list(SUPPORTED_BROWSERS)}"
            )
        if gpu_mode not in GPU_MODES:
            raise ValueError(f"Unknown gpu_mode {gpu_mode!r}. Supported: {list(GPU_MODES)}")
        self.gpu_mode = gpu_mode
        self.name: str = browser
        self._headless = headless
        self._window_size = window_size
        self._poll_interval_s = poll_interval_s
        self._script_timeout_s = script_timeout_s
        self._workdir = Path(workdir) if workdir else Path(tempfile.gettempdir())
        self._driver: Any = None
        self._early_hooks = False
        self._errors = ErrorCounter()
        self._click_track: Optional[Path] = None

    # -- Browser construction -----------------------------------------

    def _create_driver(self) -> Any:
        """Launch a new browser with an isolated profile."""
        w, h = self._window_size
        logger.info("Launching %s via Selenium (headless=%s) ...", self.name, self._headless)

        if self.name == "chrome":
            from selenium.webdriver.chrome.options import Options as ChromeOptions

            opts = ChromeOptions()
            self._add_chromium_args(opts, w, h)
            return webdriver.Chrome(options=opts)

        if self.name == "edge":
            from selenium.webdriver.edge.options import Options as EdgeOptions

            opts = EdgeOptions()
            self._add_chromium_args(opts, w, h)
            return webdriver.Edge(options=opts)

        from selenium.webdriver.firefox.options import Options as FirefoxOptions

        opts = FirefoxOptions()
        opts.set_preference("browser.shell.checkDefaultBrowser", False)
        opts.set_preference("datareporting.policy.dataSubmissionEnabled", False)
        opts.set_preference("toolkit.telemetry.reportingpolicy.firstRun", False)
        opts.set_preference("media.autoplay.default", 0)
        opts.set_preference("media.autoplay.blocking_policy", 0)
        if self._headless:
            opts.add_argument("-headless")
        opts.add_argument(f"--width={w}")
        opts.add_argument(f"--height={h}")
        return webdriver.Firefox(options=opts)

    def _add_chromium_args(self, opts: Any, w: int, h: int) -> None:
        opts.add_argument("--no-first-run")
        opts.add_argument("--no-default-browser-check")
        opts.add_argument("--disable-extensions")
        opts.add_argument("--disable-popup-blocking")
        opts.add_argument("--disable-translate")
        opts.add_argument("--password-store=basic")
        opts.add_argument("--autoplay-policy=no-user-gesture-required")
        opts.add_argument("--mute-audio")
        opts.add_argument("--use-gl=angle")
        opts.add_argument(f"--window-size={w},{h}")
        if self._headless:
            opts.add_argument("--headless=new")
        if self.gpu_mode == "off":
            opts.add_argument("--disable-gpu")
            return
        opts.add_argument("--enable-gpu-rasterization")
        opts.add_argument("--enable-zero-copy")
        if self.gpu_mode == "force-d3d11":
            opts.add_argument("--use-angle=d3d11")
            opts.add_argument("--ignore-gpu-blocklist")
            opts.add_argument("--disable-software-rasterizer")

    # -- Connection ----------------------------------------------------

    @property
    def driver(self) -> Any:
        """Return the underlying Selenium WebDriver instance."""
        return self._driver

    def connect(self) -> None:
        """Launch the browser.

        Raises
        ------
        DriverError
            ``CLOSED`` if the browser or its driver cannot be started.
        """
        if self._driver is not None:
            return
        try:
            self._driver = self._create_driver()
            self._driver.set_script_timeout(self._script_timeout_s)
        except WebDriverException as exc:
            self.disconnect()
            detail = (getattr(exc, "msg", None) or str(exc)).strip().splitlines()
            raise DriverError(
                DriverFailure.CLOSED,
                f"launch {self.name}: {detail[0] if detail else type(exc).__name__}",
            ) from exc
        self._early_hooks = self._install_early_hooks()
        self._errors.reset()

    def disconnect(self) -> None:
        """Quit the browser.  Errors from an already-dead browser are logged."""
        if self._driver is None:
            return
        logger.info("Closing %s via Selenium ...", self.name)
        try:
            self._driver.quit()
        except WebDriverException as exc:
            logger.debug("quit() on dead %s session: %s", self.name, exc)
        self._driver = None

    def is_alive(self) -> bool:
        """Return ``True`` if the browser still answers a trivial command."""
        if self._driver is None:
            return False
        try:
            self._driver.title
            return True
        except WebDriverException:
            return False

    def _install_early_hooks(self) -> bool:
        """Register the error hooks to run before any page script.

        Only Chromium drivers expose CDP; other browsers get the hooks
        after each navigation instead.
        """
        cdp = getattr(self._driver, "execute_cdp_cmd", None)
        if cdp is None:
            return False
        try:
            cdp(
                "Page.addScriptToEvaluateOnNewDocument",
                {"source": scripts.INSTALL_ERROR_HOOKS_JS},
            )
            return True
        except WebDriverException as exc:
            logger.debug("CDP hook install failed, falling back to late install: %s", exc)
            return False

    # -- Error translation ---------------------------------------------

    def _translate(
        self,
        exc: WebDriverException,
        what: str,
        fallback: DriverFailure = DriverFailure.SCRIPT,
    ) -> DriverError:
        if isinstance(exc, (InvalidSessionIdException, NoSuchWindowException)):
            reason = DriverFailure.CLOSED
        elif isinstance(exc, TimeoutException):
            reason = DriverFailure.TIMEOUT
        elif isinstance(exc, JavascriptException):
            reason = DriverFailure.SCRIPT
        elif not self.is_alive():
            reason = DriverFailure.CLOSED
        else:
            reason = fallback
        detail = (getattr(exc, "msg", None) or str(exc)).strip().splitlines()
        return DriverError(reason, f"{what}: {detail[0] if detail else type(exc).__name__}")

    def _require_driver(self) -> Any:
        if self._driver is None:
            raise DriverError(DriverFailure.CLOSED, "no active browser session")
        return self._driver

    def _execute(self, script: str, *args: Any) -> Any:
        driver = self._require_driver()
        try:
            return driver.execute_script(script, *args)
        except WebDriverException as exc:
            raise self._translate(exc, "execute_script") from exc

    # -- Navigation / observation -------------------------------------

    def navigate(self, url: str, timeout_s: float) -> None:
        driver = self._require_driver()
        try:
            driver.set_page_load_timeout(timeout_s)
            driver.get(url)
        except WebDriverException as exc:
            raise self._translate(
                exc, f"navigate {url}", fallback=DriverFailure.UNREACHABLE
            ) from exc
        self._after_page_load()

    def reload(self, timeout_s: float) -> None:
        driver = self._require_driver()
        try:
            driver.set_page_load_timeout(timeout_s)
            driver.refresh()
        except WebDriverException as exc:
            raise self._translate(exc, "reload") from exc
        self._after_page_load()

    def _after_page_load(self) -> None:
        self._errors.reset()
        if not self._early_hooks:
            self._execute(scripts.INSTALL_ERROR_HOOKS_JS)

    def observe(self) -> StateSnapshot:
        return StateSnapshot.from_raw(self._execute(scripts.SNAPSHOT_JS))

    def wait_for(
        self,
        predicate: Callable[[StateSnapshot], bool],
        timeout_s: float,
        what: str,
    ) -> StateSnapshot:
        driver = self._require_driver()

        def _check(_driver: Any) -> Any:
            snapshot = self.observe()
            return snapshot if predicate(snapshot) else False

        try:
            return WebDriverWait(
                driver, timeout_s, poll_frequency=self._poll_interval_s
            ).until(_check)
        except TimeoutException as exc:
            raise DriverError(
                DriverFailure.TIMEOUT,
                f"timed out after {timeout_s:.1f}s waiting for {what}",
            ) from exc

    # -- Actions -------------------------------------------------------

    def act(self, action_id: str) -> None:
        if action_id != ACTION_NEXT:
            raise ValueError(f"Unknown action {action_id!r}")
        if self._execute(scripts.ACT_NEXT_JS) is None:
            raise DriverError(DriverFailure.SCRIPT, "no action trigger on the page")

    def set_flags(self) -> None:
        self._execute(scripts.SET_FLAGS_JS)

    def init_pack(self, pack_id: str) -> None:
        driver = self._require_driver()
        try:
            result = driver.execute_async_script(scripts.INIT_PACK_JS, pack_id)
        except WebDriverException as exc:
            raise self._translate(exc, f"init pack {pack_id}") from exc
        if isinstance(result, dict) and "error" in result:
            logger.warning("[%s] Pack init hook failed: %s", pack_id, result["error"])
        else:
            logger.debug("[%s] Pack init hook returned %r", pack_id, result)

    def seed_order(self, pack_id: str, order: Sequence[int], reason: str) -> None:
        state = {
            "v": 0,
            "pack": pack_id,
            "len": len(order),
            "pos": 0,
            "order": list(order),
            "updatedAt": int(time.time() * 1000),
            "seededBy": reason,
        }
        self._execute(scripts.SEED_ORDER_JS, json.dumps(state))

    # -- Telemetry -----------------------------------------------------

    def sample_telemetry(self, window: TelemetryWindow) -> TelemetrySample:
        readings: list[TelemetryReading] = []
        for _ in range(window.total):
            if window.interval_s > 0:
                time.sleep(window.interval_s)
            readings.append(TelemetryReading.from_raw(self._execute(scripts.READ_TELEMETRY_JS)))
        return summarize_window(readings, window.warmup)

    def drain_error_counts(self) -> tuple[int, int]:
        raw = self._execute(scripts.READ_ERROR_COUNTS_JS)
        if not raw:
            return 0, 0
        return self._errors.drain(int(raw.get("page") or 0), int(raw.get("console") or 0))

    def drive_signal(self, source: SignalSource) -> SignalCheck:
        """Upload an audio file, start playback and poll the analysed level."""
        label = source.kind.value
        if source.kind is SignalKind.FILE:
            if source.path is None or not Path(source.path).is_file():
                return SignalCheck(ok=False, source=label, detail=f"missing file {source.path}")
            path = Path(source.path)
        else:
            path = source.path or self._ensure_click_track()

        driver = self._require_driver()
        try:
            driver.find_element(By.CSS_SELECTOR, scripts.AUDIO_FILE_SELECTOR).send_keys(
                str(Path(path).resolve())
            )
        except NoSuchElementException:
            return SignalCheck(ok=False, source=label, detail="no audio file input")
        except WebDriverException as exc:
            raise self._translate(exc, "audio upload") from exc

        deadline = time.monotonic() + _AUDIO_TOGGLE_TIMEOUT_S
        state = self._execute(scripts.START_AUDIO_JS)
        while state == "not-ready" and time.monotonic() < deadline:
            time.sleep(self._poll_interval_s)
            state = self._execute(scripts.START_AUDIO_JS)
        if state == "not-ready":
            return SignalCheck(ok=False, source=label, detail="audio toggle never enabled")

        rms: Optional[float] = None
        peak: Optional[float] = None
        deadline = time.monotonic() + source.settle_s
        while True:
            level = self._execute(scripts.READ_AUDIO_LEVEL_JS) or {}
            rms, peak = level.get("rms"), level.get("peak")
            if rms is not None and rms >= source.min_rms:
                return SignalCheck(ok=True, source=label, rms=rms, peak=peak)
            if time.monotonic() >= deadline:
                break
            time.sleep(self._poll_interval_s)

        return SignalCheck(
            ok=False,
            source=label,
            rms=rms,
            peak=peak,
            detail=f"rms below {source.min_rms} after {source.settle_s:.1f}s",
        )

    def renderer_info(self) -> RendererInfo:
        return RendererInfo.from_raw(self._execute(scripts.WEBGL_RENDERER_JS))

    def _ensure_click_track(self) -> Path:
        if self._click_track is None or not self._click_track.is_file():
            self._click_track = write_click_track(self._workdir / "click-track.wav")
        return self._click_track

    def __repr__(self) -> str:
        status = "connected" if self._driver is not None else "disconnected"
        return f"<SeleniumDriver({self.name!r}, {status})>"
