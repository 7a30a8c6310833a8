"""
Key Detection by chroma/template correlation.

- Hann-windowed frames of the first max_seconds of the track
- Power spectrum folded into a 12-bin pitch-class (chroma) histogram
- Correlated against 24 Krumhansl-Schmuckler key templates
- Output: tonic + mode with a relative confidence margin in [0, 1]
"""

import logging
from functools import lru_cache
from typing import Optional, Tuple

import numpy as np

from tempokey.models import KeyEstimate, PITCH_CLASSES, SampleBuffer

logger = logging.getLogger(__name__)

DEFAULT_FRAME_SIZE = 4096
DEFAULT_HOP_SIZE = 2048
DEFAULT_MIN_FREQ = 60
DEFAULT_MAX_FREQ = 5000
DEFAULT_MAX_SECONDS = 120

# Frames transformed per rfft call; bounds memory on long inputs
FRAME_BATCH = 256

# Krumhansl-Schmuckler tonal hierarchy profiles, tonic first
MAJOR_PROFILE = np.array([6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88])
MINOR_PROFILE = np.array([6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17])


@lru_cache(maxsize=None)
def hann_window(size: int) -> np.ndarray:
    """Symmetric Hann window, 0.5 - 0.5 cos(2*pi*i / (size - 1)); read-only."""
    window = np.hanning(size)
    window.flags.writeable = False
    return window


@lru_cache(maxsize=None)
def key_templates() -> np.ndarray:
    """
    24 L2-normalized key templates, shape (24, 12).

    Rows 0-11 are C major .. B major, rows 12-23 C minor .. B minor. Each
    profile is rotated so its tonic weight sits on the named pitch class.
    """
    rows = []
    for profile in (MAJOR_PROFILE, MINOR_PROFILE):
        normalized = profile / np.linalg.norm(profile)
        for tonic in range(12):
            rows.append(np.roll(normalized, tonic))
    templates = np.vstack(rows)
    templates.flags.writeable = False
    return templates


@lru_cache(maxsize=32)
def _bin_pitch_classes(
    frame_size: int, sample_rate: int, min_freq: float, max_freq: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Spectral bins inside [min_freq, max_freq] and their pitch classes.

    Pitch class is round(69 + 12 * log2(f / 440)) mod 12 (MIDI, A4 = 69).
    """
    bins = np.arange(1, frame_size // 2)
    freqs = bins * sample_rate / frame_size
    in_band = (freqs >= min_freq) & (freqs <= max_freq)
    bins = bins[in_band]
    midi = 69 + 12 * np.log2(freqs[in_band] / 440.0)
    pitch_classes = np.mod(np.floor(midi + 0.5).astype(np.int64), 12)
    return bins, pitch_classes


def chroma_vector(samples: np.ndarray, sample_rate: int, config: dict) -> Optional[np.ndarray]:
    """
    Aggregate pitch-class energy of the first max_seconds of audio.

    Args:
        samples: Mono samples
        sample_rate: Sample rate in Hz
        config: Key config dict (frame_size, hop_size, min_freq, max_freq, max_seconds)

    Returns:
        Unnormalized 12-element chroma, or None if shorter than one frame
    """
    frame_size = int(config.get("frame_size", DEFAULT_FRAME_SIZE))
    hop_size = int(config.get("hop_size", DEFAULT_HOP_SIZE))
    min_freq = config.get("min_freq", DEFAULT_MIN_FREQ)
    max_freq = config.get("max_freq", DEFAULT_MAX_FREQ)
    max_seconds = config.get("max_seconds", DEFAULT_MAX_SECONDS)

    max_samples = min(len(samples), int(max_seconds * sample_rate))
    if max_samples < frame_size:
        return None

    frames = np.lib.stride_tricks.sliding_window_view(samples[:max_samples], frame_size)[::hop_size]
    window = hann_window(frame_size)

    power = np.zeros(frame_size // 2 + 1)
    for start in range(0, len(frames), FRAME_BATCH):
        spectrum = np.fft.rfft(frames[start:start + FRAME_BATCH] * window, axis=1)
        power += np.sum(spectrum.real ** 2 + spectrum.imag ** 2, axis=0)

    bins, pitch_classes = _bin_pitch_classes(frame_size, sample_rate, min_freq, max_freq)
    return np.bincount(pitch_classes, weights=power[bins], minlength=12)


def match_key(chroma: np.ndarray) -> Optional[KeyEstimate]:
    """
    Best-fitting key for a chroma vector.

    The runner-up is the second highest score over all 24 templates, so a
    relative major/minor pair that fits almost equally well gives a low
    confidence.

    Args:
        chroma: 12-element pitch-class energy, C first

    Returns:
        KeyEstimate, or None if the chroma has no energy
    """
    vector = np.asarray(chroma, dtype=np.float64)
    norm = float(np.linalg.norm(vector))
    if norm == 0 or not np.isfinite(norm):
        return None
    vector = vector / norm

    scores = key_templates() @ vector
    best_index = int(np.argmax(scores))
    best = float(scores[best_index])
    runner_up = float(np.sort(scores)[-2])

    if best > 0:
        confidence = min(1.0, max(0.0, (best - runner_up) / best))
    else:
        confidence = 0.0

    return KeyEstimate(
        tonic=PITCH_CLASSES[best_index % 12],
        mode="major" if best_index < 12 else "minor",
        confidence=round(confidence, 3),
    )


def estimate_key(buffer: SampleBuffer, config: dict) -> Optional[KeyEstimate]:
    """
    Detect musical key from decoded audio.

    Args:
        buffer: Decoded mono audio
        config: Key config dict

    Returns:
        KeyEstimate or None if the signal is too short, silent, or analysis failed
    """
    try:
        chroma = chroma_vector(buffer.samples, buffer.sample_rate, config)
        if chroma is None:
            logger.warning("Audio shorter than one key frame, skipping key detection")
            return None

        key = match_key(chroma)
        if key is None:
            logger.warning("No chroma energy, key unknown")
            return None

        logger.info(f"✅ Key detected: {key.name} (confidence: {key.confidence:.3f})")
        return key

    except Exception as e:
        logger.error(f"Key detection failed: {e}", exc_info=True)
        return None
