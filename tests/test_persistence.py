"""Tests for trial records, the trial log, replay and the metadata store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.sampler.persistence import (
    MetadataStore,
    TrialLog,
    existing_run_files,
    load_progress,
)
from src.sampler.records import (
    PackProgress,
    RunError,
    RunMetadata,
    TimingStats,
    TrialRecord,
)


def _make_record(pack: str = "pack-a", pair: int = 1, **overrides) -> TrialRecord:
    fields = dict(timestamp_ms=1_700_000_000_000, pack_id=pack, trial_id=pair)
    fields.update(overrides)
    return TrialRecord(**fields)


# ===========================================================================
# TrialRecord
# ===========================================================================


class TestTrialRecord:
    """JSON form of a trials.log line."""

    def test_json_keys(self):
        data = _make_record(viz_avg_luma=0.4, reasons=("too-dark",), ok_heuristic=False).to_json_dict()
        assert data["tMs"] == 1_700_000_000_000
        assert data["pack"] == "pack-a"
        assert data["pair"] == 1
        assert data["vizAvgLuma"] == 0.4
        assert data["reasons"] == ["too-dark"]
        assert data["okHeuristic"] is False

    def test_from_json_ignores_unknown_keys(self):
        record = TrialRecord.from_json_dict({"pack": "p", "pair": 4.0, "extra": 1, "reasons": ["x"]})
        assert record.trial_id == 4
        assert record.reasons == ("x",)
        assert record.timestamp_ms == 0


# ===========================================================================
# TrialLog
# ===========================================================================


class TestTrialLog:
    """Append-only JSONL writer."""

    def test_one_line_per_record(self, tmp_path: Path):
        log = TrialLog(tmp_path / "trials.log")
        log.append(_make_record(pair=1))
        log.append(_make_record(pair=2))
        lines = (tmp_path / "trials.log").read_text().splitlines()
        assert [json.loads(line)["pair"] for line in lines] == [1, 2]
        assert log.appended == 2

    def test_partial_last_line_is_terminated(self, tmp_path: Path):
        path = tmp_path / "trials.log"
        path.write_text('{"pack":"pack-a","pair":1}\n{"pack":"pack-a","pa')
        log = TrialLog(path)
        log.append(_make_record(pair=2))
        lines = path.read_text().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[2])["pair"] == 2

    def test_creates_parent_dir(self, tmp_path: Path):
        TrialLog(tmp_path / "run" / "trials.log").append(_make_record())
        assert (tmp_path / "run" / "trials.log").is_file()


# ===========================================================================
# load_progress
# ===========================================================================


class TestLoadProgress:
    """Replay of trials.log."""

    def test_missing_file_is_empty(self, tmp_path: Path):
        state = load_progress(tmp_path / "trials.log")
        assert state.visited_by_pack == {}
        assert state.total_lines == 0

    def test_replay_skips_bad_lines(self, tmp_path: Path):
        path = tmp_path / "trials.log"
        path.write_text(
            "\n".join(
                [
                    '{"pack":"pack-a","pair":1}',
                    '{"pack":"pack-a","pair":2}',
                    '{"pack":"pack-a","pair":1}',
                    '{"pack":"pack-b","pair":"7"}',
                    "not json",
                    "[1, 2]",
                    '{"pair":3}',
                    '{"pack":"pack-a","pair":"abc"}',
                    "",
                    '{"pack":"pack-a","pa',
                ]
            )
        )
        state = load_progress(path)
        assert state.visited("pack-a") == {1, 2}
        assert state.visited("pack-b") == {7}
        assert state.lines_by_pack["pack-a"] == 3
        assert state.total_lines == 9
        assert state.malformed_lines == 5

    def test_replay_matches_written_records(self, tmp_path: Path):
        log = TrialLog(tmp_path / "trials.log")
        written: dict[str, set[int]] = {}
        for pack, pair in [("a", 1), ("a", 3), ("b", 2), ("a", 3)]:
            log.append(_make_record(pack=pack, pair=pair))
            written.setdefault(pack, set()).add(pair)
        assert load_progress(log.path).visited_by_pack == written


# ===========================================================================
# MetadataStore / RunMetadata
# ===========================================================================


class TestMetadataStore:
    """Atomic meta.json."""

    def test_roundtrip_and_no_temp_left(self, tmp_path: Path):
        store = MetadataStore(tmp_path / "meta.json")
        store.write({"run_id": "abc", "progress": {}})
        assert store.load() == {"run_id": "abc", "progress": {}}
        assert not (tmp_path / "meta.json.tmp").exists()

    def test_load_missing(self, tmp_path: Path):
        assert MetadataStore(tmp_path / "meta.json").load() is None

    @pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
    def test_load_unreadable(self, tmp_path: Path, content):
        (tmp_path / "meta.json").write_text(content)
        assert MetadataStore(tmp_path / "meta.json").load() is None

    def test_existing_run_files(self, tmp_path: Path):
        assert existing_run_files(tmp_path) == []
        (tmp_path / "trials.log").write_text("")
        assert existing_run_files(tmp_path) == [tmp_path / "trials.log"]


class TestRunMetadata:
    """meta.json document shape."""

    def test_optional_fields_omitted(self):
        data = RunMetadata(run_id="r1").to_dict()
        assert data["kind"] == "coupled_eval.v0"
        assert "error" not in data
        assert "resumed_at" not in data
        assert data["finished_at"] is None

    def test_progress_and_error_serialised(self):
        meta = RunMetadata(run_id="r1")
        meta.progress["pack-a"] = PackProgress(iter=3, visited=2, target=8, skipped="deadline exhausted")
        meta.error = RunError(code="FATAL_NO_SAMPLES", pack="pack-a", iter=3, phase="finish", message="x")
        data = meta.to_dict()
        assert data["progress"]["pack-a"] == {
            "iter": 3,
            "visited": 2,
            "target": 8,
            "targetMode": "coverage",
            "done": False,
            "skipped": "deadline exhausted",
        }
        assert data["error"]["code"] == "FATAL_NO_SAMPLES"

    def test_merge_previous(self):
        previous = RunMetadata(run_id="old", started_at="2026-01-01T00:00:00.000+00:00")
        previous.timing.session_restarts = 4
        previous.error = RunError(code="FATAL_SIGNAL", pack="p", iter=1, phase="trial", message="m")
        meta = RunMetadata(run_id="new")
        meta.merge_previous(previous.to_dict())
        assert meta.run_id == "old"
        assert meta.started_at == "2026-01-01T00:00:00.000+00:00"
        assert meta.resumed_at is not None
        assert meta.timing.session_restarts == 4
        assert meta.errors[-1]["code"] == "FATAL_SIGNAL"

    def test_preflight_history_is_bounded(self):
        timing = TimingStats()
        for i in range(30):
            timing.record_preflight(f"http://h/{i}", ok=True)
        assert len(timing.preflight) == TimingStats.MAX_PREFLIGHT_ENTRIES
        assert timing.preflight[-1]["url"] == "http://h/29"
