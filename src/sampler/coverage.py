"""Coverage tracking: when is a pack done?

Each pack has a target, either ``ceil(total * ratio)`` distinct trial
ids (coverage mode) or an explicit number of recorded trials (samples
mode).  Visited sets only ever grow; they are rebuilt on resume by
replaying the trial log.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from src.sampler.config import MAX_COVERAGE, MIN_COVERAGE

logger = logging.getLogger(__name__)


def clamp_ratio(ratio: float) -> float:
    return min(MAX_COVERAGE, max(MIN_COVERAGE, float(ratio)))


def coverage_target(total: int, ratio: float) -> int:
    """Return ``ceil(total * ratio)`` with *ratio* clamped to ``[0.01, 1]``.

    The product is rounded to 9 decimals first so float noise such as
    ``10 * 0.7 == 7.000000000000001`` does not add a phantom trial.
    """
    if total <= 0:
        return 0
    return int(math.ceil(round(total * clamp_ratio(ratio), 9)))


@dataclass
class PackCoverage:
    """Coverage state of one pack."""

    pack_id: str
    total: int
    target: int
    mode: str = "coverage"
    visited: set[int] = field(default_factory=set)
    samples: int = 0

    @property
    def done(self) -> bool:
        if self.mode == "samples":
            return self.samples >= self.target
        return len(self.visited) >= self.target


class CoverageTracker:
    """Per-pack visited sets and done checks."""

    def __init__(self) -> None:
        self._packs: dict[str, PackCoverage] = {}

    def register_pack(
        self,
        pack_id: str,
        total: int,
        ratio: float,
        target_samples: int = 0,
        visited: Iterable[int] = (),
        samples: int = 0,
    ) -> PackCoverage:
        """Register *pack_id* and seed it with replayed progress.

        Parameters
        ----------
        pack_id : str
            Pack name.
        total : int
            Manifest entry count.
        ratio : float
            Coverage ratio (ignored in samples mode).
        target_samples : int
            Positive to switch the pack to samples mode.
        visited : iterable of int
            Trial ids already recorded.
        samples : int
            Records already logged for this pack.
        """
        if target_samples > 0:
            pack = PackCoverage(pack_id, total, target_samples, mode="samples")
        else:
            pack = PackCoverage(pack_id, total, coverage_target(total, ratio))
        pack.visited.update(visited)
        pack.samples = samples
        self._packs[pack_id] = pack
        return pack

    def pack(self, pack_id: str) -> PackCoverage:
        try:
            return self._packs[pack_id]
        except KeyError:
            raise KeyError(f"Pack {pack_id!r} is not registered") from None

    def is_done(self, pack_id: str) -> bool:
        return self.pack(pack_id).done

    def record_visit(self, pack_id: str, trial_id: Optional[int]) -> bool:
        """Count one recorded trial; return ``True`` if *trial_id* was new."""
        pack = self.pack(pack_id)
        pack.samples += 1
        if trial_id is None or trial_id in pack.visited:
            return False
        pack.visited.add(trial_id)
        return True

    def visited(self, pack_id: str) -> frozenset[int]:
        """Read-only copy of the visited set."""
        return frozenset(self.pack(pack_id).visited)

    def snapshot(self) -> dict[str, list[int]]:
        """Sorted visited ids per pack."""
        return {pack_id: sorted(p.visited) for pack_id, p in self._packs.items()}

    def priority_order(
        self,
        pack_id: str,
        ids_by_index: Sequence[Optional[int]],
        rng: Optional[random.Random] = None,
    ) -> list[int]:
        """Manifest indices with unseen ids first, then seen ones.

        Each group is shuffled independently.  Entries without an id
        count as unseen.
        """
        rng = rng or random.Random()
        seen = self.pack(pack_id).visited
        missing_idx = [i for i, pid in enumerate(ids_by_index) if pid is None or pid not in seen]
        seen_idx = [i for i, pid in enumerate(ids_by_index) if pid is not None and pid in seen]
        rng.shuffle(missing_idx)
        rng.shuffle(seen_idx)
        return missing_idx + seen_idx
