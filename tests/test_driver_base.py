"""Tests for the driver contract types and the click-track."""

from __future__ import annotations

import wave
from pathlib import Path

import numpy as np
import pytest

from src.driver.base import (
    DriverError,
    DriverFailure,
    RendererInfo,
    StateSnapshot,
    TelemetryReading,
    TelemetryWindow,
    summarize_window,
)
from src.driver.click_track import click_track_samples, write_click_track


def _make_reading(fg: float, bg: float, color: float | None = None) -> TelemetryReading:
    rgb = None if color is None else (color, color, color)
    return TelemetryReading(fg_luma=fg, bg_luma=bg, fg_color=rgb, bg_color=rgb)


# ===========================================================================
# StateSnapshot
# ===========================================================================


class TestStateSnapshot:
    """from_raw tolerance and derived properties."""

    def test_empty_raw_is_unobserved(self):
        snap = StateSnapshot.from_raw(None)
        assert snap.ready is None
        assert snap.last_trial_id is None

    def test_observed_false_differs_from_missing(self):
        snap = StateSnapshot.from_raw({"ready": False})
        assert snap.ready is False
        assert snap.hooks_ready is None

    def test_maps_raw_keys(self):
        snap = StateSnapshot.from_raw(
            {
                "ready": True,
                "hooksReady": 1,
                "pack": "pack-a",
                "packEnabled": True,
                "lastActionTimeMs": 123.0,
                "lastPair": 7.9,
                "presetFgId": "coupled:pack-a:7:fg",
                "audioRms": 0.01,
                "unknownKey": "ignored",
            }
        )
        assert snap.hooks_ready is True
        assert snap.last_trial_id == 7
        assert snap.applied_fg_id == "coupled:pack-a:7:fg"
        assert snap.signal_rms == 0.01
        assert snap.pack_active("pack-a")
        assert not snap.pack_active("pack-b")

    def test_wrong_types_are_unobserved(self):
        snap = StateSnapshot.from_raw(
            {"lastPair": "abc", "pack": 5, "audioRms": float("nan"), "quality01": True}
        )
        assert snap.last_trial_id is None
        assert snap.pack_id is None
        assert snap.signal_rms is None
        assert snap.quality01 is None

    @pytest.mark.parametrize(
        "text, loading",
        [("Loading presets...", True), ("正在加载", True), ("ready", False), (None, False)],
    )
    def test_is_loading(self, text, loading):
        assert StateSnapshot(status_text=text).is_loading is loading


# ===========================================================================
# Telemetry
# ===========================================================================


class TestSummarizeWindow:
    """Luma and motion aggregation."""

    def test_window_total(self):
        assert TelemetryWindow(warmup=2, measure=6).total == 8

    def test_composite_luma_is_layer_mean(self):
        assert _make_reading(0.2, 0.6).composite_luma == pytest.approx(0.4)
        assert TelemetryReading(bg_luma=0.3).composite_luma == pytest.approx(0.3)
        assert TelemetryReading().composite_luma is None

    def test_warmup_discarded(self):
        readings = [_make_reading(0.9, 0.9), _make_reading(0.1, 0.1), _make_reading(0.3, 0.3)]
        sample = summarize_window(readings, warmup=1)
        assert sample.avg_luma == pytest.approx(0.2)
        assert sample.readings == 3

    def test_motion_weights_luma_and_color(self):
        readings = [_make_reading(0.1, 0.1, color=0.0), _make_reading(0.3, 0.3, color=0.5)]
        sample = summarize_window(readings, warmup=1)
        assert sample.avg_frame_delta == pytest.approx(0.65 * 0.2 + 0.35 * 0.5)

    def test_motion_falls_back_to_luma(self):
        readings = [_make_reading(0.1, 0.1), _make_reading(0.2, 0.2)]
        sample = summarize_window(readings, warmup=1)
        assert sample.avg_frame_delta == pytest.approx(0.1)

    def test_no_readings(self):
        sample = summarize_window([], warmup=2)
        assert sample.avg_luma is None
        assert sample.avg_frame_delta is None

    def test_raw_reading(self):
        reading = TelemetryReading.from_raw(
            {"fgLuma": 0.5, "bgLuma": None, "fgColor": {"r": 1, "g": 2, "b": 3}, "bgColor": {}}
        )
        assert reading.fg_color == (1.0, 2.0, 3.0)
        assert reading.bg_color is None
        assert reading.composite_luma == pytest.approx(0.5)


# ===========================================================================
# DriverError
# ===========================================================================


class TestDriverError:
    def test_carries_reason(self):
        err = DriverError(DriverFailure.TIMEOUT, "slow")
        assert err.reason is DriverFailure.TIMEOUT
        assert str(err) == "slow"

    def test_default_message(self):
        assert DriverError(DriverFailure.CLOSED).message == "closed"


# ===========================================================================
# RendererInfo
# ===========================================================================


class TestRendererInfo:
    def test_from_raw(self):
        info = RendererInfo.from_raw(
            {"ok": True, "vendor": "Google Inc. (Google)", "renderer": "ANGLE (SwiftShader Device)"}
        )
        assert info.is_software
        assert info.to_dict() == {
            "ok": True,
            "vendor": "Google Inc. (Google)",
            "renderer": "ANGLE (SwiftShader Device)",
        }

    def test_failed_context(self):
        info = RendererInfo.from_raw({"ok": False, "error": "no webgl context"})
        assert not info.is_software
        assert info.to_dict() == {"ok": False, "error": "no webgl context"}

    def test_missing_result(self):
        assert RendererInfo.from_raw(None).to_dict() == {"ok": False, "error": "no renderer info"}


# ===========================================================================
# Click-track
# ===========================================================================


class TestClickTrack:
    """Synthetic fallback signal."""

    def test_one_pulse_per_beat(self):
        samples = click_track_samples(sample_rate=1000, bpm=120, duration_s=2.0, pulse_ms=10)
        assert samples.dtype == np.int16
        assert samples.size == 2000
        onsets = np.flatnonzero(samples[:-1] == 0) + 1
        peaks = [i for i in onsets if samples[i] > 20000]
        assert peaks == [500, 1000, 1500]
        assert samples[0] == int(round(0.9 * 32767))

    def test_pulse_decays(self):
        samples = click_track_samples(sample_rate=1000, pulse_ms=10, duration_s=1.0)
        assert samples[0] > samples[5] > samples[9] > 0
        assert samples[10] == 0

    def test_write_wav(self, tmp_path: Path):
        path = write_click_track(tmp_path / "sub" / "click.wav", duration_s=1.0)
        with wave.open(str(path), "rb") as wav:
            assert wav.getnchannels() == 1
            assert wav.getsampwidth() == 2
            assert wav.getframerate() == 44100
            assert wav.getnframes() == 44100
