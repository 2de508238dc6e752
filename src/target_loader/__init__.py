"""Target loader subsystem: serve the target application for sampling.

Each target is described by a :class:`TargetLoaderConfig` and managed
by a :class:`TargetLoader` subclass that knows how to serve and
health-check it.

Typical usage::

    from src.target_loader import load_target_config, create_loader

    config = load_target_config("coupled-viz")
    with create_loader(config) as loader:
        ...  # drive loader.url
"""

from src.target_loader.base import TargetLoader, TargetLoaderError
from src.target_loader.config import TargetLoaderConfig, load_target_config
from src.target_loader.dev_server_loader import DevServerLoader, http_probe
from src.target_loader.factory import create_loader, register_loader

__all__ = [
    "TargetLoaderConfig",
    "load_target_config",
    "TargetLoader",
    "TargetLoaderError",
    "DevServerLoader",
    "http_probe",
    "create_loader",
    "register_loader",
]
