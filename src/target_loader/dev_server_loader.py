"""Dev-server target loader: keeps the target app's Vite server up.

Handles the common pattern of: optional ``npm install`` -> ``npx vite ...``
-> poll ``http://127.0.0.1:<port>/`` until the dev server responds ->
target is ready for the sampler's browser session.

An already-running server is accepted when ``reuse_existing`` is set,
and ``no_spawn`` turns the loader into a pure reachability check.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import IO, Optional
from urllib.parse import urlparse

from src.target_loader.base import TargetLoader, TargetLoaderError
from src.target_loader.config import TargetLoaderConfig

logger = logging.getLogger(__name__)


def http_probe(url: str, timeout_s: float = 5.0) -> bool:
    """Return ``True`` if an HTTP GET of *url* answers with status < 400."""
    try:
        req = urllib.request.Request(url, method="GET")
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return resp.status < 400
    except (urllib.error.URLError, OSError, ValueError):
        return False


def tcp_probe(url: str, default_port: int = 80, timeout_s: float = 2.0) -> bool:
    """Return ``True`` if the host/port of *url* accepts a TCP connection."""
    parsed = urlparse(url)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or default_port
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True
    except OSError:
        return False


class DevServerLoader(TargetLoader):
    """Loader for a target served by a local Node dev server.

    The general flow:

    1. **setup**: run ``install_command`` in ``app_dir`` (optional).
    2. **start**: reuse a reachable server if allowed, otherwise spawn
       ``serve_command`` in the background and poll the readiness
       endpoint until it responds with HTTP < 400 (or the timeout
       expires).
    3. **is_ready**: TCP connect followed by an HTTP GET.
    4. **stop**: terminate the server process group, if we spawned it.

    Server output goes to ``server_log`` (or ``os.devnull``) rather than
    a pipe, so a server that logs heavily over a ten-hour run can never
    block on a full pipe buffer.

    Parameters
    ----------
    config : TargetLoaderConfig
        Configuration describing the target.
    """

    def __init__(self, config: TargetLoaderConfig) -> None:
        super().__init__(config)
        self._process: subprocess.Popen | None = None
        self._log_fh: Optional[IO[str]] = None

    @property
    def spawned(self) -> bool:
        """Whether this loader owns a server process."""
        return self._process is not None

    # -- Lifecycle -----------------------------------------------------

    def setup(self) -> None:
        """Install dependencies via the configured install command.

        Skipped if ``install_command`` is ``None`` or empty, or when
        ``no_spawn`` is set.
        """
        if not self.config.install_command or self.config.no_spawn:
            logger.info("[%s] No install step, skipping setup", self.name)
            return

        app_dir = Path(self.config.app_dir)
        if not app_dir.is_dir():
            raise TargetLoaderError(f"App directory does not exist: {app_dir}")

        logger.info(
            "[%s] Running install: %s (in %s)",
            self.name,
            self.config.install_command,
            app_dir,
        )
        result = subprocess.run(
            self.config.install_command,
            cwd=str(app_dir),
            shell=True,
            capture_output=True,
            text=True,
            env={**os.environ, **self.config.env_vars},
        )
        if result.returncode != 0:
            raise TargetLoaderError(
                f"Install command failed (exit {result.returncode}):\n"
                f"stdout: {result.stdout[-500:]}\n"
                f"stderr: {result.stderr[-500:]}"
            )
        logger.info("[%s] Install completed successfully", self.name)

    def start(self) -> None:
        """Make the dev server reachable and block until it is ready.

        Raises
        ------
        TargetLoaderError
            If ``no_spawn`` is set and nothing answers, if the server
            process exits early, or if the readiness timeout expires.
        """
        if self._running:
            logger.warning("[%s] Already running, stop first", self.name)
            return

        if self.config.reuse_existing or self.config.no_spawn:
            if self.is_ready():
                logger.info(
                    "[%s] Reusing server already listening at %s",
                    self.name,
                    self.config.url,
                )
                self._running = True
                return
            if self.config.no_spawn:
                raise TargetLoaderError(
                    f"No server reachable at {self.config.readiness_endpoint} "
                    "and spawning is disabled"
                )

        app_dir = Path(self.config.app_dir)
        if not app_dir.is_dir():
            raise TargetLoaderError(f"App directory does not exist: {app_dir}")

        command = self.config.resolved_serve_command
        logger.info("[%s] Starting dev server: %s (in %s)", self.name, command, app_dir)

        if self.config.server_log:
            log_path = Path(self.config.server_log)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_fh = open(log_path, "a", encoding="utf-8")
        else:
            self._log_fh = open(os.devnull, "w", encoding="utf-8")

        kwargs: dict = dict(
            cwd=str(app_dir),
            shell=True,
            stdout=self._log_fh,
            stderr=subprocess.STDOUT,
            text=True,
            env={**os.environ, **self.config.env_vars},
        )
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        self._process = subprocess.Popen(command, **kwargs)
        logger.info("[%s] Server process PID: %d", self.name, self._process.pid)

        self._wait_until_ready()
        self._running = True
        logger.info("[%s] Target is ready at %s", self.name, self.config.url)

    def is_ready(self) -> bool:
        """Check if the dev server is responding.

        Uses a two-stage probe: a TCP connect to the readiness
        endpoint's port, then an HTTP GET (status < 400).
        """
        endpoint = self.config.readiness_endpoint
        if not tcp_probe(endpoint, default_port=self.config.serve_port):
            return False
        return http_probe(endpoint)

    def stop(self) -> None:
        """Terminate the dev server process group, if spawned here.

        A reused server is left running.
        """
        if self._process is None:
            self._running = False
            self._close_log()
            return

        pid = self._process.pid
        logger.info("[%s] Stopping server (PID %d)", self.name, pid)

        try:
            if sys.platform == "win32":
                subprocess.run(
                    ["taskkill", "/F", "/T", "/PID", str(pid)],
                    capture_output=True,
                )
            else:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            self._process.wait(timeout=10)
        except (ProcessLookupError, OSError, subprocess.TimeoutExpired):
            logger.warning("[%s] Forceful termination of PID %d", self.name, pid)
            try:
                self._process.kill()
                self._process.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.debug("[%s] Kill of PID %d failed: %s", self.name, pid, exc)

        self._process = None
        self._running = False
        self._close_log()
        logger.info("[%s] Server stopped", self.name)

    # -- Internal -------------------------------------------------------

    def _close_log(self) -> None:
        if self._log_fh is not None:
            self._log_fh.close()
            self._log_fh = None

    def _wait_until_ready(self) -> None:
        """Poll the readiness endpoint until it responds or timeout.

        Raises
        ------
        TargetLoaderError
            If the server process exits or the timeout expires before
            the endpoint responds.
        """
        deadline = time.monotonic() + self.config.readiness_timeout_s
        interval = self.config.readiness_poll_interval_s
        endpoint = self.config.readiness_endpoint

        logger.info(
            "[%s] Waiting for %s (timeout %.0fs)",
            self.name,
            endpoint,
            self.config.readiness_timeout_s,
        )

        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                code = self._process.returncode
                self._process = None
                self._close_log()
                raise TargetLoaderError(
                    f"Server process exited with code {code} before becoming "
                    f"ready (see {self.config.server_log or 'server output'})"
                )

            if self.is_ready():
                return

            time.sleep(interval)

        self.stop()
        raise TargetLoaderError(
            f"Server did not become ready within "
            f"{self.config.readiness_timeout_s}s at {endpoint}"
        )
