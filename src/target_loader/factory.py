"""Factory function for creating target loaders from configuration.

The :func:`create_loader` function maps a :class:`TargetLoaderConfig`
to the appropriate :class:`TargetLoader` subclass based on the
``loader_type`` field.
"""

from __future__ import annotations

import logging

from src.target_loader.base import TargetLoader, TargetLoaderError
from src.target_loader.config import TargetLoaderConfig

logger = logging.getLogger(__name__)

# Registry of loader_type -> class.
_LOADER_REGISTRY: dict[str, type[TargetLoader]] = {}
_REGISTRY_INITIALIZED: bool = False


def _ensure_registry() -> None:
    """Lazily populate the registry to avoid circular imports."""
    global _REGISTRY_INITIALIZED
    if _REGISTRY_INITIALIZED:
        return

    from src.target_loader.dev_server_loader import DevServerLoader

    _LOADER_REGISTRY.setdefault("dev-server", DevServerLoader)
    _REGISTRY_INITIALIZED = True


def create_loader(config: TargetLoaderConfig) -> TargetLoader:
    """Instantiate the correct :class:`TargetLoader` for ``config``.

    Raises
    ------
    TargetLoaderError
        If ``loader_type`` is not recognised.
    """
    _ensure_registry()

    loader_cls = _LOADER_REGISTRY.get(config.loader_type)
    if loader_cls is None:
        raise TargetLoaderError(
            f"Unknown loader_type {config.loader_type!r}. "
            f"Available: {sorted(_LOADER_REGISTRY)}"
        )

    logger.info("Creating %s for target %r", loader_cls.__name__, config.name)
    return loader_cls(config)


def register_loader(name: str, loader_cls: type[TargetLoader]) -> None:
    """Register a custom loader class for a given ``loader_type``."""
    _ensure_registry()
    _LOADER_REGISTRY[name] = loader_cls
    logger.info("Registered custom loader %r -> %s", name, loader_cls.__name__)
