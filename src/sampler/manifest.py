"""Pack manifest reader.

A manifest lives at ``<manifest_root>/<pack>/<manifest_name>`` and holds
a ``pairs`` array of ``{pair, fgUrl, bgUrl, ...}`` entries.  It fixes
the pack's total trial count and the set of identifiers the target is
allowed to report.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from src.sampler.failures import ManifestError

logger = logging.getLogger(__name__)


@dataclass
class PackManifest:
    """Parsed manifest of one pack.

    Attributes
    ----------
    pack_id : str
        Pack name.
    path : Path
        Manifest file.
    ids_by_index : list[int or None]
        Trial id of each manifest entry; ``None`` for malformed entries.
    urls : dict[int, tuple[str or None, str or None]]
        ``(fgUrl, bgUrl)`` per trial id, when present.
    """

    pack_id: str
    path: Path
    ids_by_index: list[Optional[int]] = field(default_factory=list)
    urls: dict[int, tuple[Optional[str], Optional[str]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._allowed = frozenset(i for i in self.ids_by_index if i is not None)

    @property
    def pair_count(self) -> int:
        """Number of manifest entries: the pack's total trial count."""
        return len(self.ids_by_index)

    @property
    def allowed_ids(self) -> frozenset[int]:
        return self._allowed

    def contains(self, trial_id: int) -> bool:
        return trial_id in self._allowed

    def preset_label(self, trial_id: int) -> str:
        """Short ``fg+bg`` label of a pair for log lines; empty without urls."""
        fg, bg = self.urls.get(trial_id, (None, None))
        names = [PurePosixPath(u).stem for u in (fg, bg) if u]
        return "+".join(names)

    def summary(self) -> dict[str, Any]:
        """Per-pack entry for ``meta.json``."""
        return {
            "manifest": str(self.path),
            "pairCount": self.pair_count,
            "uniquePairIds": len(self._allowed),
        }


def _as_trial_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return int(math.floor(num)) if math.isfinite(num) else None


def manifest_path(root: str | Path, pack_id: str, name: str) -> Path:
    return Path(root) / pack_id / name


def load_manifest(root: str | Path, pack_id: str, name: str) -> PackManifest:
    """Read and validate the manifest of *pack_id*.

    Raises
    ------
    ManifestError
        If the file is missing, is not JSON, has no ``pairs`` array or
        contains no usable trial id.
    """
    path = manifest_path(root, pack_id, name)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ManifestError(f"Manifest not found for pack {pack_id!r}: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Unreadable manifest {path}: {exc}") from exc

    pairs = data.get("pairs") if isinstance(data, dict) else None
    if not isinstance(pairs, list):
        raise ManifestError(f"Invalid pairs manifest (no 'pairs' array): {path}")

    ids_by_index: list[Optional[int]] = []
    urls: dict[int, tuple[Optional[str], Optional[str]]] = {}
    for entry in pairs:
        pid = _as_trial_id(entry.get("pair")) if isinstance(entry, dict) else None
        ids_by_index.append(pid)
        if pid is None:
            continue
        fg = entry.get("fgUrl")
        bg = entry.get("bgUrl")
        if isinstance(fg, str) or isinstance(bg, str):
            urls.setdefault(
                pid,
                (fg if isinstance(fg, str) else None, bg if isinstance(bg, str) else None),
            )

    manifest = PackManifest(pack_id=pack_id, path=path, ids_by_index=ids_by_index, urls=urls)
    if not manifest.allowed_ids:
        raise ManifestError(f"Manifest {path} has no usable pair ids")

    malformed = ids_by_index.count(None)
    if malformed:
        logger.warning("[%s] %d manifest entries without a usable pair id", pack_id, malformed)
    if len(manifest.allowed_ids) + malformed < manifest.pair_count:
        logger.warning(
            "[%s] Manifest has duplicate pair ids (%d unique of %d entries)",
            pack_id,
            len(manifest.allowed_ids),
            manifest.pair_count,
        )

    logger.info(
        "[%s] Manifest %s: %d pairs", pack_id, path.name, manifest.pair_count
    )
    return manifest
