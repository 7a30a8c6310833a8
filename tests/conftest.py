"""
Shared synthetic audio for analysis tests.

Everything is generated with numpy at 22050 Hz so tests never need real
audio files or a decoder.
"""

import numpy as np
import pytest

from tempokey.config import Config
from tempokey.models import SampleBuffer

SAMPLE_RATE = 22050


def make_click_track(bpm: float, seconds: float, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Short decaying 1 kHz blips every 60/bpm seconds."""
    samples = np.zeros(int(seconds * sample_rate), dtype=np.float32)
    click_length = int(0.01 * sample_rate)
    t = np.arange(click_length) / sample_rate
    click = 0.8 * np.sin(2 * np.pi * 1000 * t) * np.exp(-t * 300)

    period = 60.0 / bpm
    for onset in np.arange(0, seconds, period):
        start = int(round(onset * sample_rate))
        end = min(start + click_length, len(samples))
        samples[start:end] += click[: end - start]
    return samples


def make_chord(freqs, seconds: float, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Equal-amplitude sine mix of the given frequencies."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    mix = sum(np.sin(2 * np.pi * f * t) for f in freqs)
    return (0.2 * mix).astype(np.float32)


@pytest.fixture
def config():
    """Default configuration (no file on disk)."""
    return Config.defaults()


@pytest.fixture
def click_buffer():
    """Factory for click-track buffers."""
    def _make(bpm=120.0, seconds=60.0):
        return SampleBuffer(samples=make_click_track(bpm, seconds), sample_rate=SAMPLE_RATE)
    return _make


@pytest.fixture
def c_major_buffer():
    """10 seconds of C4/E4/G4/C5."""
    samples = make_chord([261.63, 329.63, 392.00, 523.25], 10.0)
    return SampleBuffer(samples=samples, sample_rate=SAMPLE_RATE)


@pytest.fixture
def silent_buffer():
    """10 seconds of digital silence."""
    return SampleBuffer(samples=np.zeros(10 * SAMPLE_RATE, dtype=np.float32), sample_rate=SAMPLE_RATE)
