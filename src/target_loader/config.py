"""Target loader configuration data structures.

A :class:`TargetLoaderConfig` describes everything the loader needs to
know about the target application: where its source lives, how to serve
it, and how to tell when the dev server is ready.

Configs can be loaded from YAML files via :func:`load_target_config`.
String values in YAML configs support environment variable expansion
using ``$VAR`` or ``${VAR}`` syntax, as well as ``~`` for the user
home directory.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Default search path for target config YAML files.
_CONFIGS_DIR = Path(__file__).resolve().parent.parent.parent / "configs" / "targets"

# Pattern matching $VAR or ${VAR} for environment variable expansion.
_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass
class TargetLoaderConfig:
    """Declarative description of how to serve the target application.

    Parameters
    ----------
    name : str
        Human-readable identifier for the target (e.g. ``"coupled-viz"``).
    app_dir : str or Path
        Path to the target application's repository.
    loader_type : str
        Which :class:`TargetLoader` subclass to use.  Built-in value:
        ``"dev-server"``.
    install_command : str, optional
        Shell command to install dependencies.  Run once during
        :meth:`TargetLoader.setup`.
    serve_command : str
        Shell command to start the dev server.  ``{host}`` and
        ``{port}`` placeholders are substituted.
    host : str
        Loopback host the dev server binds to.
    serve_port : int
        Port the dev server listens on.
    url : str
        Base URL of the target once the server is up.  Defaults to
        ``http://<host>:<serve_port>/``.
    readiness_endpoint : str
        URL to poll (HTTP GET) to determine when the server is ready.
        Defaults to the same value as ``url``.
    readiness_timeout_s : float
        Maximum seconds to wait for the readiness endpoint to respond.
    readiness_poll_interval_s : float
        Seconds between readiness polls.
    reuse_existing : bool
        Accept an already-running server on ``url`` instead of
        spawning a new one.
    no_spawn : bool
        Never spawn a server; fail if none is reachable.
    server_log : str, optional
        File that receives the server's stdout/stderr.
    window_width : int
        Browser viewport width in pixels.
    window_height : int
        Browser viewport height in pixels.
    env_vars : dict[str, str]
        Extra environment variables to set for the serve process.
    """

    name: str
    app_dir: str | Path = "."
    loader_type: str = "dev-server"

    # Serve
    install_command: Optional[str] = None
    serve_command: str = (
        "npx --no-install vite --host={host} --port={port} --strictPort --clearScreen=false"
    )
    host: str = "127.0.0.1"
    serve_port: int = 5174
    url: str = ""
    readiness_endpoint: str = ""
    readiness_timeout_s: float = 90.0
    readiness_poll_interval_s: float = 0.4
    reuse_existing: bool = True
    no_spawn: bool = False
    server_log: Optional[str] = None

    # Browser viewport
    window_width: int = 1280
    window_height: int = 720

    env_vars: dict[str, str] = field(
        default_factory=lambda: {"NW_VERIFY": "1", "VITE_NW_VERIFY": "1"}
    )

    def __post_init__(self) -> None:
        self.app_dir = Path(os.path.expanduser(_expand_vars(str(self.app_dir))))
        if not self.url:
            self.url = f"http://{self.host}:{self.serve_port}/"
        if not self.readiness_endpoint:
            self.readiness_endpoint = self.url

    @property
    def resolved_serve_command(self) -> str:
        """Serve command with ``{host}`` / ``{port}`` substituted."""
        return self.serve_command.format(host=self.host, port=self.serve_port)


def _expand_vars(value: str) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references in a string.

    Undefined variables are left as-is (no error).  ``${VAR:-default}``
    falls back to ``default``.
    """

    def _replace(match: re.Match) -> str:
        braced = match.group(1)
        bare = match.group(2)
        original: str = match.group(0) or ""

        if braced is not None:
            if ":-" in braced:
                var_name, default = braced.split(":-", 1)
                return os.environ.get(var_name, default)
            return os.environ.get(braced, original)

        return os.environ.get(bare or "", original)

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_vars_recursive(data: dict[str, Any]) -> dict[str, Any]:
    """Expand environment variables in all string values of *data*.

    Nested mappings (e.g. ``env_vars``) are expanded as well.
    """
    expanded: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            expanded[key] = _expand_vars(value)
        elif isinstance(value, dict):
            expanded[key] = _expand_vars_recursive(value)
        else:
            expanded[key] = value
    return expanded


def read_yaml_mapping(config_path: Path) -> dict[str, Any]:
    """Read *config_path* as a YAML mapping with env-var expansion.

    Raises
    ------
    ValueError
        If the document is not a mapping.
    """
    with open(config_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(
            f"Expected a YAML mapping in {config_path}, got {type(raw).__name__}"
        )
    return _expand_vars_recursive(raw)


def load_target_config(
    name: str,
    configs_dir: str | Path | None = None,
) -> TargetLoaderConfig:
    """Load a :class:`TargetLoaderConfig` from a YAML file.

    Searches ``configs_dir`` (default ``configs/targets/``) for a file
    named ``<name>.yaml``.

    Parameters
    ----------
    name : str
        Target identifier matching the YAML filename (without extension).
    configs_dir : str or Path, optional
        Override the default config directory.

    Returns
    -------
    TargetLoaderConfig

    Raises
    ------
    FileNotFoundError
        If no YAML file is found for ``name``.
    ValueError
        If the YAML contains unknown or missing fields.
    """
    search_dir = Path(configs_dir) if configs_dir else _CONFIGS_DIR
    config_path = search_dir / f"{name}.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"No target config found at {config_path}. "
            f"Available configs: {[p.stem for p in search_dir.glob('*.yaml')]}"
        )

    logger.info("Loading target config from %s", config_path)
    raw = read_yaml_mapping(config_path)

    valid_fields = {f.name for f in dataclasses.fields(TargetLoaderConfig)}
    unknown = set(raw) - valid_fields
    if unknown:
        raise ValueError(
            f"Unknown fields in {config_path}: {sorted(unknown)}. "
            f"Valid fields: {sorted(valid_fields)}"
        )

    try:
        return TargetLoaderConfig(**raw)
    except TypeError as exc:
        raise ValueError(
            f"Invalid config in {config_path}: {exc}. "
            f"Valid fields: {sorted(valid_fields)}"
        ) from exc
