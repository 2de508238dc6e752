"""Shared pytest fixtures for the sampler test suite.

Provides :class:`FakeDriver`, a scripted in-memory
:class:`~src.driver.base.TargetDriver`, plus config/manifest builders
and a controllable clock.  No browser or dev server is needed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence
from urllib.parse import parse_qs, urlparse

import pytest

from src.driver.base import (
    ACTION_NEXT,
    DriverError,
    DriverFailure,
    RendererInfo,
    SignalCheck,
    SignalKind,
    SignalSource,
    StateSnapshot,
    TargetDriver,
    TelemetrySample,
    TelemetryWindow,
)
from src.sampler.config import SamplerConfig
from src.sampler.manifest import PackManifest
from src.sampler.trial import expected_ids

BASE_URL = "http://127.0.0.1:5174/"


# ---------------------------------------------------------------------------
# Fake driver
# ---------------------------------------------------------------------------


class FakeDriver(TargetDriver):
    """Deterministic target driver.

    The page changes state instantly, so :meth:`wait_for` checks its
    predicate once and times out otherwise.  ``renderer`` is what
    :meth:`renderer_info` reports.

    Parameters
    ----------
    picks : dict[str, list[int or None]]
        Trial ids handed out by successive ``next`` actions per pack.
        ``None`` (or an exhausted list) makes the action a no-op, so
        the following "new pick" wait times out.
    signal_ok : set of SignalKind
        Signal sources that produce a live level.
    """

    def __init__(
        self,
        picks: Optional[dict[str, list[Optional[int]]]] = None,
        signal_ok: Optional[set[SignalKind]] = None,
        sample: Optional[TelemetrySample] = None,
    ) -> None:
        self.picks = {pack: list(seq) for pack, seq in (picks or {}).items()}
        self.signal_ok = {SignalKind.FILE, SignalKind.SYNTHETIC} if signal_ok is None else signal_ok
        self.sample = sample or TelemetrySample(avg_luma=0.4, avg_frame_delta=0.01, readings=8)
        self.connected = False
        self.connects = 0
        self.calls: list[str] = []
        self.urls: list[str] = []
        self.seeded: list[tuple[str, list[int], str]] = []
        self.signals: list[SignalKind] = []
        self.pending_errors = (0, 0)
        self.failures: dict[str, list[BaseException]] = {}
        self.on_act: Optional[Callable[[], None]] = None
        self.on_navigate: Optional[Callable[[], None]] = None
        self.renderer = RendererInfo(ok=True, vendor="Fake", renderer="ANGLE (Fake GPU)")
        self._marker = 0.0
        self._blank()

    # -- Scripting -----------------------------------------------------

    def fail_next(self, method: str, *errors: BaseException) -> None:
        """Make the next calls of *method* raise *errors*, in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)
        if method not in ("connect", "disconnect") and not self.connected:
            raise DriverError(DriverFailure.CLOSED, "not connected")

    def _blank(self) -> None:
        self.state: dict = {}

    def _load(self, pack: Optional[str]) -> None:
        self.state = {
            "ready": True,
            "hooks_ready": True,
            "action_enabled": True,
            "pack_id": pack,
            "pack_enabled": pack is not None,
        }

    # -- TargetDriver --------------------------------------------------

    def connect(self) -> None:
        self._enter("connect")
        self.connected = True
        self.connects += 1
        self._blank()

    def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    def is_alive(self) -> bool:
        return self.connected

    def navigate(self, url: str, timeout_s: float) -> None:
        self._enter("navigate")
        self.urls.append(url)
        if self.on_navigate is not None:
            self.on_navigate()
        pack = parse_qs(urlparse(url).query).get("coupledPack", [None])[0]
        self._load(pack)

    def observe(self) -> StateSnapshot:
        self._enter("observe")
        return StateSnapshot(**self.state)

    def wait_for(
        self,
        predicate: Callable[[StateSnapshot], bool],
        timeout_s: float,
        what: str,
    ) -> StateSnapshot:
        self._enter("wait_for")
        snapshot = StateSnapshot(**self.state)
        if predicate(snapshot):
            return snapshot
        raise DriverError(DriverFailure.TIMEOUT, f"timed out after {timeout_s}s waiting for {what}")

    def reload(self, timeout_s: float) -> None:
        self._enter("reload")
        self._load(self.state.get("pack_id"))

    def act(self, action_id: str) -> None:
        self._enter("act")
        assert action_id == ACTION_NEXT
        if self.on_act is not None:
            self.on_act()
        pack = self.state.get("pack_id")
        queue = self.picks.get(pack) or []
        if not queue:
            return
        trial_id = queue.pop(0)
        if trial_id is None:
            return
        self._marker += 1
        fg, bg = expected_ids(pack, trial_id)
        self.state.update(
            last_action_time_ms=self._marker,
            last_trial_id=trial_id,
            applied_fg_id=fg,
            applied_bg_id=bg,
            warp_diff=0.25,
            quality01=0.8,
        )

    def set_flags(self) -> None:
        self._enter("set_flags")

    def init_pack(self, pack_id: str) -> None:
        self._enter("init_pack")
        self.state.update(pack_id=pack_id, pack_enabled=True)

    def seed_order(self, pack_id: str, order: Sequence[int], reason: str) -> None:
        self._enter("seed_order")
        self.seeded.append((pack_id, list(order), reason))

    def sample_telemetry(self, window: TelemetryWindow) -> TelemetrySample:
        self._enter("sample_telemetry")
        return self.sample

    def drive_signal(self, source: SignalSource) -> SignalCheck:
        self._enter("drive_signal")
        self.signals.append(source.kind)
        if source.kind in self.signal_ok:
            return SignalCheck(ok=True, source=source.kind.value, rms=0.02, peak=0.3)
        return SignalCheck(ok=False, source=source.kind.value, rms=0.0, detail="silent")

    def drain_error_counts(self) -> tuple[int, int]:
        self._enter("drain_error_counts")
        counts, self.pending_errors = self.pending_errors, (0, 0)
        return counts

    def renderer_info(self) -> RendererInfo:
        self._enter("renderer_info")
        return self.renderer


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_config(**overrides) -> SamplerConfig:
    """A fast, validated SamplerConfig for tests."""
    defaults = dict(
        packs=["pack-a"],
        coverage=1.0,
        audio_mode="synthetic",
        self_test_cycles=0,
        sample_interval_s=0.0,
        nav_backoff_s=0.0,
        signal_settle_s=0.0,
        checkpoint_every=5,
        reload_every=0,
        seed=7,
    )
    defaults.update(overrides)
    config = SamplerConfig(**defaults)
    config.validate()
    return config


def make_manifest(pack_id: str, ids: Sequence[Optional[int]]) -> PackManifest:
    return PackManifest(
        pack_id=pack_id,
        path=Path("presets") / pack_id / "pairs-manifest.v0.json",
        ids_by_index=list(ids),
    )


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
