"""Tests for coverage targets, visit tracking and priority ordering."""

from __future__ import annotations

import random

import pytest

from src.sampler.coverage import CoverageTracker, coverage_target


class TestCoverageTarget:
    """ceil(total * ratio) with a clamped ratio."""

    @pytest.mark.parametrize(
        "total, ratio, expected",
        [
            (10, 0.8, 8),
            (10, 0.7, 7),
            (10, 0.99, 10),
            (100, 0.99, 99),
            (3, 0.5, 2),
            (10, 5.0, 10),
            (10, 0.0, 1),
            (0, 0.9, 0),
        ],
    )
    def test_target(self, total, ratio, expected):
        assert coverage_target(total, ratio) == expected


class TestCoverageTracker:
    """Per-pack visited sets and done checks."""

    def test_eight_of_ten_done(self):
        tracker = CoverageTracker()
        pack = tracker.register_pack("pack-a", total=10, ratio=0.8)
        assert pack.target == 8
        for pair in range(1, 8):
            tracker.record_visit("pack-a", pair)
        assert not tracker.is_done("pack-a")
        tracker.record_visit("pack-a", 8)
        assert tracker.is_done("pack-a")

    def test_duplicates_do_not_count(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=2, ratio=1.0)
        assert tracker.record_visit("pack-a", 1) is True
        assert tracker.record_visit("pack-a", 1) is False
        assert not tracker.is_done("pack-a")
        assert tracker.pack("pack-a").samples == 2

    def test_visited_never_shrinks(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=5, ratio=1.0, visited={1, 2})
        sizes = []
        for pair in [2, 3, None, 3, 4]:
            tracker.record_visit("pack-a", pair)
            sizes.append(len(tracker.visited("pack-a")))
        assert sizes == sorted(sizes)
        assert tracker.visited("pack-a") == {1, 2, 3, 4}

    def test_visited_is_a_copy(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=5, ratio=1.0, visited={1})
        view = tracker.visited("pack-a")
        tracker.record_visit("pack-a", 2)
        assert view == {1}

    def test_samples_mode(self):
        tracker = CoverageTracker()
        pack = tracker.register_pack("pack-a", total=100, ratio=0.99, target_samples=3, samples=1)
        assert pack.mode == "samples"
        tracker.record_visit("pack-a", 5)
        tracker.record_visit("pack-a", 5)
        assert tracker.is_done("pack-a")

    def test_resume_already_done(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=4, ratio=0.5, visited={1, 2})
        assert tracker.is_done("pack-a")

    def test_unknown_pack(self):
        with pytest.raises(KeyError, match="not registered"):
            CoverageTracker().is_done("nope")

    def test_snapshot(self):
        tracker = CoverageTracker()
        tracker.register_pack("b", total=3, ratio=1.0, visited={3, 1})
        tracker.register_pack("a", total=3, ratio=1.0)
        assert tracker.snapshot() == {"b": [1, 3], "a": []}


class TestPriorityOrder:
    """Unseen manifest indices come first."""

    def test_unseen_first(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=6, ratio=1.0, visited={10, 30})
        ids_by_index = [10, 20, 30, 40, None, 60]
        order = tracker.priority_order("pack-a", ids_by_index, random.Random(3))
        assert sorted(order) == list(range(6))
        assert set(order[:4]) == {1, 3, 4, 5}
        assert set(order[4:]) == {0, 2}

    def test_deterministic_with_seed(self):
        tracker = CoverageTracker()
        tracker.register_pack("pack-a", total=20, ratio=1.0)
        ids = list(range(20))
        first = tracker.priority_order("pack-a", ids, random.Random(1))
        second = tracker.priority_order("pack-a", ids, random.Random(1))
        assert first == second
