"""End-to-end tests for RunController against the fake driver.

Covers:
- multi-pack runs reaching their coverage targets
- deadline handling (mid-pack stop, later packs skipped)
- fatal exits: manifest mismatch, no samples, restart limit, software WebGL
- transient stalls recovered by one soft reset
- resume from an interrupted run and already-done packs
- startup failures recorded before any controller exists
"""

from __future__ import annotations

import json
import random
from pathlib import Path

from conftest import BASE_URL, FakeClock, FakeDriver, make_config, make_manifest
from src.driver.base import DriverError, DriverFailure, RendererInfo
from src.sampler.failures import ErrorCode
from src.sampler.persistence import META_FILE, TRIALS_LOG, load_progress
from src.sampler.recovery import RecoveryPhase
from src.sampler.runner import DEADLINE_SKIP_REASON, RunController, record_startup_failure
from src.target_loader.base import TargetLoaderError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_runner(run_dir: Path, driver: FakeDriver, manifests: dict, clock=None, **overrides):
    config = make_config(packs=list(manifests), **overrides)
    return RunController(
        config,
        driver,
        run_dir,
        BASE_URL,
        preflight=lambda url: True,
        manifests=dict(manifests),
        clock=clock or FakeClock(),
        sleep=lambda s: None,
        rng=random.Random(0),
    )


def _manifests(**packs) -> dict:
    """Build manifests keyed by pack id; ``pack_a`` becomes ``pack-a``."""
    out = {}
    for name, ids in packs.items():
        pack_id = name.replace("_", "-")
        out[pack_id] = make_manifest(pack_id, ids)
    return out


def _meta(run_dir: Path) -> dict:
    return json.loads((run_dir / META_FILE).read_text())


def _lines(run_dir: Path) -> list[dict]:
    path = run_dir / TRIALS_LOG
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line]


# ===========================================================================
# Successful runs
# ===========================================================================


class TestCompletion:
    """Packs run in order until their targets are met."""

    def test_two_packs(self, tmp_path: Path):
        manifests = _manifests(pack_a=range(1, 11), pack_b=[1, 2])
        driver = FakeDriver(picks={"pack-a": list(range(1, 11)), "pack-b": [2, 1]})
        runner = _make_runner(tmp_path, driver, manifests, coverage=0.8)

        assert runner.run() == 0

        lines = _lines(tmp_path)
        assert [line["pack"] for line in lines] == ["pack-a"] * 8 + ["pack-b"] * 2
        meta = _meta(tmp_path)
        assert "error" not in meta
        assert meta["finished_at"]
        assert meta["progress"]["pack-a"]["visited"] == 8
        assert meta["progress"]["pack-a"]["target"] == 8
        assert meta["progress"]["pack-a"]["done"] is True
        assert meta["progress"]["pack-b"]["done"] is True
        assert meta["packs"]["pack-a"]["pairCount"] == 10
        assert meta["budget"]["clamped"] is False
        assert not driver.connected

    def test_runtime_recorded(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1])
        driver = FakeDriver(picks={"pack-a": [1]})
        runner = _make_runner(tmp_path, driver, manifests, headed=True)

        assert runner.run() == 0

        assert _meta(tmp_path)["runtime"] == {
            "gpuMode": "safe",
            "headed": True,
            "requireGpu": True,
            "webgl": {"ok": True, "vendor": "Fake", "renderer": "ANGLE (Fake GPU)"},
        }

    def test_replay_matches_visited(self, tmp_path: Path):
        manifests = _manifests(pack_a=range(1, 7))
        driver = FakeDriver(picks={"pack-a": [3, 3, 1, 2, 1, 4, 5, 6]})
        runner = _make_runner(tmp_path, driver, manifests)

        assert runner.run() == 0

        replay = load_progress(tmp_path / TRIALS_LOG)
        assert replay.visited("pack-a") == runner.coverage.visited("pack-a")
        assert replay.lines_by_pack["pack-a"] == 8

    def test_transient_stalls_recovered(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1])
        driver = FakeDriver(picks={"pack-a": [None, None, None, 1]})
        runner = _make_runner(tmp_path, driver, manifests)

        assert runner.run() == 0

        assert runner.recovery.transitions[RecoveryPhase.RECOVERING] == 1
        assert driver.calls.count("reload") == 1
        assert driver.connects == 1
        assert len(_lines(tmp_path)) == 1


# ===========================================================================
# Deadline
# ===========================================================================


class TestDeadline:
    """The time budget stops sampling without failing the run."""

    def test_later_packs_skipped(self, tmp_path: Path):
        clock = FakeClock()
        manifests = _manifests(pack_a=range(1, 11), pack_b=[1, 2])
        driver = FakeDriver(picks={"pack-a": list(range(1, 11)), "pack-b": [1, 2]})
        driver.on_act = lambda: clock.advance(1000)
        runner = _make_runner(tmp_path, driver, manifests, clock=clock, max_hours=0.12)

        assert runner.run() == 0

        meta = _meta(tmp_path)
        assert meta["progress"]["pack-a"]["visited"] == 1
        assert meta["progress"]["pack-a"]["done"] is False
        assert meta["progress"]["pack-b"]["skipped"] == DEADLINE_SKIP_REASON
        assert all(line["pack"] == "pack-a" for line in _lines(tmp_path))

    def test_small_budget_clamped(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1])
        driver = FakeDriver(picks={"pack-a": [1]})
        runner = _make_runner(tmp_path, driver, manifests, max_hours=0.01)

        assert runner.run() == 0

        meta = _meta(tmp_path)
        assert meta["budget"]["clamped"] is True
        assert meta["budget"]["maxHoursEffective"] == 0.12
        assert "max_hours_too_small_for_restart_prone_flow" in meta["warnings"]

    def test_no_samples_is_fatal(self, tmp_path: Path):
        clock = FakeClock()
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 2]})
        driver.on_navigate = lambda: clock.advance(1000)
        runner = _make_runner(tmp_path, driver, manifests, clock=clock, max_hours=0.12)

        assert runner.run() == 1

        error = _meta(tmp_path)["error"]
        assert error["code"] == ErrorCode.NO_SAMPLES.value
        assert error["pack"] == "pack-a"
        assert error["phase"] == "finish"


# ===========================================================================
# Fatal errors
# ===========================================================================


class TestFatal:
    """Fatal errors end the run with meta.error written."""

    def test_manifest_mismatch(self, tmp_path: Path):
        manifests = _manifests(pack_a=range(1, 11))
        driver = FakeDriver(picks={"pack-a": [1, 2, 99]})
        runner = _make_runner(tmp_path, driver, manifests)

        assert runner.run() == 1

        assert len(_lines(tmp_path)) == 2
        meta = _meta(tmp_path)
        assert meta["error"]["code"] == "FATAL_MANIFEST_MISMATCH"
        assert meta["error"]["phase"] == "trial"
        assert meta["error"]["iter"] == 3
        assert meta["error"]["pack"] == "pack-a"
        assert meta["finished_at"]
        assert not driver.connected

    def test_missing_manifest(self, tmp_path: Path):
        config = make_config(packs=["pack-a"])
        driver = FakeDriver()
        runner = RunController(
            config,
            driver,
            tmp_path / "run",
            BASE_URL,
            preflight=lambda url: True,
            manifest_root=tmp_path / "presets",
            sleep=lambda s: None,
        )

        assert runner.run() == 1

        error = _meta(tmp_path / "run")["error"]
        assert error["code"] == "FATAL_MANIFEST_MISMATCH"
        assert error["phase"] == "manifest"
        assert driver.connects == 0

    def test_unreachable_target(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1])
        runner = _make_runner(tmp_path, FakeDriver(picks={"pack-a": [1]}), manifests)
        runner.bootstrap.preflight = lambda url: False

        assert runner.run() == 1

        error = _meta(tmp_path)["error"]
        assert error["code"] == "FATAL_TARGET_UNREACHABLE"
        assert error["phase"] == "bootstrap"

    def test_restart_limit(self, tmp_path: Path):
        manifests = _manifests(pack_a=range(1, 11))
        driver = FakeDriver(picks={"pack-a": list(range(1, 11))})
        driver.fail_next("act", *[DriverError(DriverFailure.CLOSED, "tab crashed")] * 3)
        runner = _make_runner(tmp_path, driver, manifests, max_restarts=2)

        assert runner.run() == 1

        meta = _meta(tmp_path)
        assert meta["error"]["code"] == "FATAL_SESSION_RESTART_LIMIT"
        assert meta["error"]["phase"] == "recovery"
        assert meta["timing"]["session_restarts"] == 2
        assert driver.connects == 3
        assert _lines(tmp_path) == []

    def test_session_restart_then_continue(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 2]})
        driver.fail_next("act", DriverError(DriverFailure.CLOSED, "tab crashed"))
        runner = _make_runner(tmp_path, driver, manifests)

        assert runner.run() == 0

        assert driver.connects == 2
        assert runner.recovery.state.session_restarts == 1
        assert _meta(tmp_path)["progress"]["pack-a"]["done"] is True

    def test_untyped_error_restarts_session(self, tmp_path: Path):
        """An error outside the taxonomy costs one restart, not the run."""
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 1, 2]})
        driver.fail_next("sample_telemetry", RuntimeError("unexpected payload"))
        runner = _make_runner(tmp_path, driver, manifests)

        assert runner.run() == 0

        assert driver.connects == 2
        assert runner.recovery.state.session_restarts == 1
        meta = _meta(tmp_path)
        assert "error" not in meta
        assert meta["progress"]["pack-a"]["done"] is True
        assert [line["pair"] for line in _lines(tmp_path)] == [1, 2]

    def test_failed_relaunch_retried(self, tmp_path: Path):
        """A browser that fails to relaunch once is relaunched again."""
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 2]})
        crashed = []

        def _crash_once():
            if not crashed:
                crashed.append(True)
                driver.fail_next("connect", DriverError(DriverFailure.CLOSED, "chromedriver died"))
                raise DriverError(DriverFailure.CLOSED, "tab crashed")

        driver.on_act = _crash_once
        runner = _make_runner(tmp_path, driver, manifests, max_restarts=5)

        assert runner.run() == 0

        assert driver.calls.count("connect") == 3
        assert driver.connects == 2
        assert runner.recovery.state.session_restarts == 2
        meta = _meta(tmp_path)
        assert "error" not in meta
        assert meta["timing"]["session_restarts"] == 1
        assert len(_lines(tmp_path)) == 2

    def test_relaunch_never_succeeds(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 2]})

        def _crash():
            driver.fail_next("connect", *[DriverError(DriverFailure.CLOSED, "no browser")] * 5)
            raise DriverError(DriverFailure.CLOSED, "tab crashed")

        driver.on_act = _crash
        runner = _make_runner(tmp_path, driver, manifests, max_restarts=2)

        assert runner.run() == 1

        error = _meta(tmp_path)["error"]
        assert error["code"] == "FATAL_SESSION_RESTART_LIMIT"
        assert error["phase"] == "recovery"
        assert driver.connects == 1

    def test_software_renderer_with_gpu_required(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1, 2])
        driver = FakeDriver(picks={"pack-a": [1, 2]})
        driver.renderer = RendererInfo(ok=True, vendor="Google", renderer="ANGLE (SwiftShader)")
        runner = _make_runner(tmp_path, driver, manifests, headed=True)

        assert runner.run() == 1

        meta = _meta(tmp_path)
        assert meta["error"]["code"] == "FATAL_WEBGL_SWIFTSHADER"
        assert meta["error"]["phase"] == "bootstrap"
        assert meta["runtime"]["webgl"]["renderer"] == "ANGLE (SwiftShader)"
        assert _lines(tmp_path) == []
        assert driver.connects == 1


# ===========================================================================
# Resume
# ===========================================================================


class TestResume:
    """Resume replays trials.log and merges meta.json."""

    def test_resume_after_failure(self, tmp_path: Path):
        manifests = _manifests(pack_a=range(1, 7))
        first = _make_runner(tmp_path, FakeDriver(picks={"pack-a": [1, 2, 99]}), manifests)
        assert first.run() == 1
        first_meta = _meta(tmp_path)

        driver = FakeDriver(picks={"pack-a": [2, 3, 4, 5, 6]})
        second = _make_runner(tmp_path, driver, manifests, resume=True)
        assert second.run() == 0

        meta = _meta(tmp_path)
        assert meta["run_id"] == first_meta["run_id"]
        assert meta["started_at"] == first_meta["started_at"]
        assert meta["resumed_at"]
        assert "error" not in meta
        assert meta["errors"][-1]["code"] == "FATAL_MANIFEST_MISMATCH"
        assert meta["progress"]["pack-a"]["visited"] == 6
        assert len(_lines(tmp_path)) == 2 + 5

    def test_already_done_pack_not_bootstrapped(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1, 2])
        assert _make_runner(tmp_path, FakeDriver(picks={"pack-a": [1, 2]}), manifests).run() == 0

        driver = FakeDriver(picks={"pack-a": []})
        runner = _make_runner(tmp_path, driver, manifests, resume=True)
        assert runner.run() == 0

        assert driver.urls == []
        meta = _meta(tmp_path)
        assert meta["progress"]["pack-a"]["done"] is True
        assert meta["progress"]["pack-a"]["visited"] == 2

    def test_without_resume_visited_starts_empty(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1, 2])
        assert _make_runner(tmp_path, FakeDriver(picks={"pack-a": [1, 2]}), manifests).run() == 0

        driver = FakeDriver(picks={"pack-a": [1, 2]})
        assert _make_runner(tmp_path, driver, manifests).run() == 0
        assert len(_lines(tmp_path)) == 4
        assert "resumed_at" not in _meta(tmp_path)


# ===========================================================================
# Startup failures
# ===========================================================================


class TestStartupFailure:
    def test_record(self, tmp_path: Path):
        code = record_startup_failure(tmp_path, TargetLoaderError("port busy"), "target")
        assert code is ErrorCode.TARGET_NOT_READY
        error = _meta(tmp_path)["error"]
        assert error["phase"] == "target"
        assert error["message"] == "port busy"
        assert error["pack"] is None

    def test_keeps_previous_identity(self, tmp_path: Path):
        manifests = _manifests(pack_a=[1])
        assert _make_runner(tmp_path, FakeDriver(picks={"pack-a": [1]}), manifests).run() == 0
        run_id = _meta(tmp_path)["run_id"]

        record_startup_failure(tmp_path, TargetLoaderError("port busy"), "target")
        assert _meta(tmp_path)["run_id"] == run_id
