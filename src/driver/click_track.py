"""Synthetic click-track used as the fallback audio signal.

A short mono 16-bit PCM WAV with one decaying pulse per beat.  It is
only meant to give the target's audio analysis a non-zero level when
no real audio file is available.
"""

from __future__ import annotations

import logging
import wave
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


def click_track_samples(
    sample_rate: int = 44100,
    bpm: float = 120.0,
    duration_s: float = 22.0,
    pulse_ms: float = 12.0,
    amplitude: float = 0.9,
) -> np.ndarray:
    """Return the click-track as an ``int16`` sample array.

    Each beat starts a pulse of ``pulse_ms`` with an ``exp(-6 t)``
    envelope, where ``t`` runs from 0 to 1 across the pulse.
    """
    amplitude = float(np.clip(amplitude, 0.0, 1.0))
    total = max(1, int(duration_s * sample_rate))
    beat = max(1, int((60.0 / bpm) * sample_rate))
    pulse_len = max(1, int((pulse_ms / 1000.0) * sample_rate))

    envelope = np.exp(-6.0 * (np.arange(pulse_len) / pulse_len))
    pulse = np.clip(np.round(amplitude * envelope * 32767), -32768, 32767).astype(np.int16)

    samples = np.zeros(total, dtype=np.int16)
    for start in range(0, total, beat):
        end = min(start + pulse_len, total)
        samples[start:end] = pulse[: end - start]
    return samples


def write_click_track(path: str | Path, sample_rate: int = 44100, **kwargs: float) -> Path:
    """Write the click-track WAV to *path* and return it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    samples = click_track_samples(sample_rate=sample_rate, **kwargs)

    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.astype("<i2").tobytes())

    logger.debug("Wrote click-track (%d samples) to %s", samples.size, path)
    return path
