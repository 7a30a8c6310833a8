"""
Tempo estimation: overall BPM plus a time-segmented tempo curve.

Two interchangeable strategies behind TempoEstimator:
- AutocorrelationTempoEstimator: onset-energy autocorrelation over sliding
  windows, used with the ffmpeg decoder
- BeatTrackingTempoEstimator: beat timestamps from aubio or essentia, turned
  into a smoothed tempo map, used with in-process decoding

Both fold results into [bpm_min, bpm_max], merge neighbouring segments whose
BPM is within merge_tolerance, and round BPM/boundaries to one decimal.

References:
- https://aubio.org/manual/latest/py_analysis.html
- https://essentia.upf.edu/reference/std_RhythmExtractor2013.html
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from tempokey.analyze.decode import resample_linear
from tempokey.models import SampleBuffer, TempoResult, TempoSegment

logger = logging.getLogger(__name__)

DEFAULT_BPM_MIN = 60
DEFAULT_BPM_MAX = 200
DEFAULT_WINDOW_SECONDS = 30
DEFAULT_HOP_SECONDS = 15
DEFAULT_MERGE_TOLERANCE = 2.0
DEFAULT_FRAME_SIZE = 1024
DEFAULT_HOP_SIZE = 512
DEFAULT_PEAK_RATIO = 0.5
DEFAULT_MOVING_AVERAGE_WINDOW = 4
DEFAULT_GLITCH_RATIO = 0.3
DEFAULT_BEAT_FRAME_SIZE = 1024
DEFAULT_BEAT_HOP_SIZE = 256

ESSENTIA_SAMPLE_RATE = 44100
BEAT_TICK_SLACK_SECONDS = 0.25

_ONSET_SMOOTHING = np.array([0.25, 0.5, 0.25])


def round_to(value: float, decimals: int) -> float:
    """Round half away from zero to `decimals` places (119.25 -> 119.3)."""
    factor = 10 ** decimals
    return math.floor(abs(value) * factor + 0.5) / factor * (1 if value >= 0 else -1)


def median(values: Sequence[float]) -> Optional[float]:
    """Median of finite values, or None if there are none."""
    finite = [v for v in values if math.isfinite(v)]
    if not finite:
        return None
    return float(np.median(finite))


def fold_tempo(
    bpm: Optional[float],
    bpm_min: float = DEFAULT_BPM_MIN,
    bpm_max: float = DEFAULT_BPM_MAX,
) -> Optional[float]:
    """
    Bring a tempo into [bpm_min, bpm_max] by doubling or halving.

    Autocorrelation cannot tell a tempo from its double or half, so the
    octave is resolved toward the configured range.

    Args:
        bpm: Raw tempo estimate
        bpm_min: Lower bound of the range
        bpm_max: Upper bound of the range

    Returns:
        Folded tempo, or None for missing, non-positive or non-finite input
    """
    if bpm is None or not math.isfinite(bpm) or bpm <= 0:
        return None

    # Keep doubling if too slow
    while bpm < bpm_min:
        bpm *= 2

    # Keep halving if too fast
    while bpm > bpm_max:
        bpm /= 2

    return bpm


def merge_tempo_segments(
    segments: Sequence[TempoSegment],
    tolerance: float = DEFAULT_MERGE_TOLERANCE,
) -> List[TempoSegment]:
    """
    Left-to-right run-length reduction of a tempo curve.

    A segment within `tolerance` BPM of the previous merged segment is folded
    into it (duration-weighted BPM, end extended). Otherwise it starts a new
    segment, clipped so it never begins before the previous one ends.

    A merge shifts the merged BPM, so the result is re-checked against the
    segment before it; consecutive output segments always differ by more
    than `tolerance`.
    """
    merged: List[TempoSegment] = []

    for segment in segments:
        if not merged:
            merged.append(replace(segment))
            continue

        last = merged[-1]
        if abs(segment.bpm - last.bpm) <= tolerance:
            _absorb(last, segment)
            while len(merged) > 1 and abs(merged[-1].bpm - merged[-2].bpm) <= tolerance:
                _absorb(merged[-2], merged.pop())
            continue

        start = max(segment.start, last.end)
        if start >= segment.end:
            continue
        merged.append(TempoSegment(start=start, end=segment.end, bpm=segment.bpm))

    return merged


def _absorb(target: TempoSegment, segment: TempoSegment) -> None:
    """Fold `segment` into `target`: duration-weighted BPM, end extended."""
    target_duration = target.end - target.start
    segment_duration = segment.end - segment.start
    total = target_duration + segment_duration
    if total > 0:
        target.bpm = (target.bpm * target_duration + segment.bpm * segment_duration) / total
    target.end = max(target.end, segment.end)


def onset_envelope(samples: np.ndarray, frame_size: int, hop_size: int) -> Optional[np.ndarray]:
    """
    Onset strength from short-term frame energy.

    Energy per frame (sum of squares), positive first difference, then the
    mean is subtracted and negatives clamped as an adaptive noise floor.

    Returns:
        Onset signal with one value per frame transition, or None if the input
        holds fewer than two full frames
    """
    if len(samples) < frame_size * 2:
        return None

    frame_count = (len(samples) - frame_size) // hop_size + 1
    if frame_count <= 2:
        return None

    frames = np.lib.stride_tricks.sliding_window_view(samples, frame_size)[::hop_size][:frame_count]
    energies = np.einsum("ij,ij->i", frames, frames, dtype=np.float64)

    onset = np.maximum(np.diff(energies), 0.0)
    onset = np.maximum(onset - onset.mean(), 0.0)
    return onset


def _autocorrelation(signal: np.ndarray, max_lag: int) -> np.ndarray:
    """Correlation sums for lags 0..max_lag (index == lag)."""
    corr = np.zeros(max_lag + 1)
    for lag in range(max_lag + 1):
        if lag >= len(signal):
            break
        corr[lag] = np.dot(signal[lag:], signal[: len(signal) - lag])
    return corr


def _pick_lag(corr: np.ndarray, min_lag: int, max_lag: int, peak_ratio: float) -> Optional[float]:
    """
    Choose the beat period (in frames) from an autocorrelation curve.

    Multiples of the beat period (bars, half notes) correlate about as well as
    the beat itself, so the shortest local peak reaching peak_ratio of the
    strongest one wins. The peak is refined by parabolic interpolation.
    """
    window = corr[min_lag: max_lag + 1]
    best_value = float(window.max()) if len(window) else 0.0
    if best_value <= 0:
        return None

    chosen = None
    for lag in range(min_lag, max_lag + 1):
        value = corr[lag]
        if value <= 0 or value < peak_ratio * best_value:
            continue
        if value >= corr[lag - 1] and (lag + 1 >= len(corr) or value >= corr[lag + 1]):
            chosen = lag
            break

    if chosen is None:
        chosen = min_lag + int(np.argmax(window))

    if chosen - 1 < 0 or chosen + 1 >= len(corr):
        return float(chosen)

    y0, y1, y2 = corr[chosen - 1], corr[chosen], corr[chosen + 1]
    denom = y0 - 2 * y1 + y2
    if denom >= 0:
        return float(chosen)
    offset = 0.5 * (y0 - y2) / denom
    return chosen + float(np.clip(offset, -0.5, 0.5))


def estimate_window_tempo(samples: np.ndarray, sample_rate: int, config: dict) -> Optional[float]:
    """
    Dominant tempo of one stretch of audio via onset autocorrelation.

    Args:
        samples: Mono samples
        sample_rate: Sample rate in Hz
        config: Tempo config dict (frame_size, hop_size, bpm_min, bpm_max, peak_ratio)

    Returns:
        Folded BPM (unrounded) or None if no periodicity was found
    """
    frame_size = int(config.get("frame_size", DEFAULT_FRAME_SIZE))
    hop_size = int(config.get("hop_size", DEFAULT_HOP_SIZE))
    bpm_min = config.get("bpm_min", DEFAULT_BPM_MIN)
    bpm_max = config.get("bpm_max", DEFAULT_BPM_MAX)
    peak_ratio = config.get("peak_ratio", DEFAULT_PEAK_RATIO)

    onset = onset_envelope(samples, frame_size, hop_size)
    if onset is None or not np.any(onset > 0):
        return None

    smoothed = np.convolve(onset, _ONSET_SMOOTHING, mode="same")

    frames_per_minute = 60.0 * sample_rate / hop_size
    min_lag = max(2, int(frames_per_minute / bpm_max))
    # Search down to half of bpm_min so slower pulses are seen and folded
    max_lag = min(int(2 * frames_per_minute / bpm_min), len(smoothed) - 2)
    if max_lag < min_lag:
        return None

    corr = _autocorrelation(smoothed, max_lag + 1)
    lag = _pick_lag(corr, min_lag, max_lag, peak_ratio)
    if lag is None:
        return None

    return fold_tempo(frames_per_minute / lag, bpm_min, bpm_max)


def build_tempo_segments(buffer: SampleBuffer, config: dict) -> List[TempoSegment]:
    """
    Tempo curve from sliding windows, merged by tolerance (unrounded).

    Returns:
        Merged segments; empty when the buffer is shorter than one window
    """
    sample_rate = buffer.sample_rate
    window = int(sample_rate * config.get("window_seconds", DEFAULT_WINDOW_SECONDS))
    hop = int(sample_rate * config.get("hop_seconds", DEFAULT_HOP_SECONDS))
    samples = buffer.samples

    if window <= 0 or hop <= 0 or len(samples) < window:
        return []

    provisional: List[TempoSegment] = []
    for start in range(0, len(samples) - window + 1, hop):
        end = start + window
        bpm = estimate_window_tempo(samples[start:end], sample_rate, config)
        if bpm is None:
            logger.debug(f"No periodicity in window {start / sample_rate:.1f}s-{end / sample_rate:.1f}s")
            continue
        provisional.append(TempoSegment(start=start / sample_rate, end=end / sample_rate, bpm=bpm))

    return merge_tempo_segments(
        provisional, config.get("merge_tolerance", DEFAULT_MERGE_TOLERANCE)
    )


def build_tempo_map(
    beats: Sequence[float],
    duration: float,
    config: dict,
) -> Tuple[List[TempoSegment], Optional[float]]:
    """
    Turn beat timestamps into a smoothed, merged tempo curve (unrounded).

    Instantaneous BPM (60 / interval) outside the range is discarded, the rest
    is smoothed with a moving average, and a smoothed value deviating more than
    glitch_ratio from the last accepted one is rejected as a double/half flip.

    Args:
        beats: Beat times in seconds, ascending
        duration: Track duration; the last segment is extended to it
        config: Tempo config dict

    Returns:
        Tuple of (segments, median BPM or None)
    """
    bpm_min = config.get("bpm_min", DEFAULT_BPM_MIN)
    bpm_max = config.get("bpm_max", DEFAULT_BPM_MAX)
    window = int(config.get("moving_average_window", DEFAULT_MOVING_AVERAGE_WINDOW))
    glitch_ratio = config.get("glitch_ratio", DEFAULT_GLITCH_RATIO)
    tolerance = config.get("merge_tolerance", DEFAULT_MERGE_TOLERANCE)

    intervals: List[TempoSegment] = []
    history: List[float] = []
    last_stable: Optional[float] = None

    for start, end in zip(beats, beats[1:]):
        interval = end - start
        if not math.isfinite(interval) or interval <= 0:
            continue

        raw_bpm = 60.0 / interval
        if raw_bpm < bpm_min or raw_bpm > bpm_max:
            continue

        next_history = (history + [raw_bpm])[-window:]
        smoothed = sum(next_history) / len(next_history)

        if last_stable and abs(smoothed - last_stable) / last_stable > glitch_ratio:
            continue

        history = next_history
        last_stable = smoothed
        intervals.append(TempoSegment(start=float(start), end=float(end), bpm=smoothed))

    merged = merge_tempo_segments(intervals, tolerance)

    if merged and duration > merged[-1].end:
        merged[-1].end = duration

    return merged, median([segment.bpm for segment in merged])


def _detect_beats_aubio(buffer: SampleBuffer, config: dict) -> Optional[List[float]]:
    """
    Beat times from aubio's tempo tracker, fed hop-sized blocks of the buffer.

    Uses beat_frame_size/beat_hop_size, not the autocorrelation frames: with
    fewer than ~80 onset frames per second aubio locks onto half tempo.

    Returns:
        List of beat times in seconds, or None if aubio failed
    """
    try:
        import aubio

        frame_size = int(config.get("beat_frame_size", DEFAULT_BEAT_FRAME_SIZE))
        hop_size = int(config.get("beat_hop_size", DEFAULT_BEAT_HOP_SIZE))

        logger.debug("Using aubio beat tracking...")
        tracker = aubio.tempo("default", frame_size, hop_size, buffer.sample_rate)

        beats = []
        samples = buffer.samples
        for start in range(0, len(samples), hop_size):
            block = np.zeros(hop_size, dtype=np.float32)
            chunk = samples[start:start + hop_size]
            block[: len(chunk)] = chunk
            if tracker(block)[0]:
                beats.append(float(tracker.get_last_s()))

        logger.debug(f"Aubio found {len(beats)} beats, raw BPM {tracker.get_bpm():.1f}")
        return beats

    except ImportError:
        logger.warning("aubio not available")
        return None
    except Exception as e:
        logger.warning(f"Aubio beat tracking failed: {e}")
        return None


def _detect_beats_essentia(buffer: SampleBuffer, config: dict) -> Optional[List[float]]:
    """
    Beat times from essentia's RhythmExtractor2013 (multifeature).

    RhythmExtractor2013 assumes 44.1 kHz input, so the buffer is resampled first.

    Returns:
        List of beat times in seconds, or None if essentia failed
    """
    try:
        import essentia.standard as es

        logger.debug("Using essentia RhythmExtractor2013...")

        audio = resample_linear(buffer.samples, buffer.sample_rate, ESSENTIA_SAMPLE_RATE)
        min_tempo = int(min(180, max(40, config.get("bpm_min", DEFAULT_BPM_MIN))))
        max_tempo = int(min(250, max(60, config.get("bpm_max", DEFAULT_BPM_MAX))))

        extractor = es.RhythmExtractor2013(
            method="multifeature", minTempo=min_tempo, maxTempo=max_tempo
        )
        bpm, ticks, confidence, _, _ = extractor(np.array(audio, dtype=np.float32))

        logger.debug(f"Essentia raw BPM: {bpm:.1f}, confidence: {confidence:.2f}")
        return [float(t) for t in ticks]

    except ImportError:
        logger.warning("Essentia not available")
        return None
    except Exception as e:
        logger.warning(f"Essentia beat tracking failed: {e}")
        return None


def detect_beats(buffer: SampleBuffer, config: dict) -> Optional[List[float]]:
    """
    Beat timestamps from the configured detector ("aubio" or "essentia").

    Ticks outside [0, duration + 0.25s] are dropped.

    Returns:
        Ascending beat times in seconds, or None if the detector failed
    """
    detector = config.get("beat_detector", "aubio")
    if detector == "essentia":
        beats = _detect_beats_essentia(buffer, config)
    else:
        beats = _detect_beats_aubio(buffer, config)

    if beats is None:
        return None

    limit = buffer.duration + BEAT_TICK_SLACK_SECONDS
    return sorted(t for t in beats if math.isfinite(t) and 0 <= t <= limit)


class TempoEstimator(ABC):
    """
    Common contract for tempo strategies: estimate(buffer) -> TempoResult.

    estimate() is a template method: subclasses implement _estimate_impl()
    returning unrounded values, and the base class rounds them and absorbs
    unexpected failures into an empty result.
    """

    name = "tempo"

    def __init__(self, config: Optional[dict] = None):
        """
        Args:
            config: Tempo config dict from config["tempo"]
        """
        self.config = dict(config or {})
        self.bpm_min = self.config.get("bpm_min", DEFAULT_BPM_MIN)
        self.bpm_max = self.config.get("bpm_max", DEFAULT_BPM_MAX)

    def estimate(self, buffer: SampleBuffer) -> TempoResult:
        start_time = time.time()
        try:
            result = self._estimate_impl(buffer)
        except Exception as e:
            logger.error(f"{self.name} tempo estimation failed: {e}", exc_info=True)
            return TempoResult()

        result = self._round(result)
        logger.debug(
            f"{self.name}: bpm={result.bpm}, {len(result.segments)} segment(s) "
            f"in {time.time() - start_time:.2f}s"
        )
        return result

    @abstractmethod
    def _estimate_impl(self, buffer: SampleBuffer) -> TempoResult:
        raise NotImplementedError

    @staticmethod
    def _round(result: TempoResult) -> TempoResult:
        return TempoResult(
            segments=[
                TempoSegment(
                    start=round_to(s.start, 1),
                    end=round_to(s.end, 1),
                    bpm=round_to(s.bpm, 1),
                )
                for s in result.segments
            ],
            bpm=None if result.bpm is None else round_to(result.bpm, 1),
            beat_timestamps=result.beat_timestamps,
        )


class AutocorrelationTempoEstimator(TempoEstimator):
    """Sliding-window onset autocorrelation; no beat timestamps."""

    name = "autocorrelation"

    def _estimate_impl(self, buffer: SampleBuffer) -> TempoResult:
        segments = build_tempo_segments(buffer, self.config)

        if segments:
            bpm = fold_tempo(median([s.bpm for s in segments]), self.bpm_min, self.bpm_max)
        else:
            # Shorter than one window: whole-buffer estimate, if enough frames
            bpm = estimate_window_tempo(buffer.samples, buffer.sample_rate, self.config)

        return TempoResult(segments=segments, bpm=bpm)


class BeatTrackingTempoEstimator(TempoEstimator):
    """Tempo map from detected beats; exposes beat timestamps."""

    name = "beats"

    def _estimate_impl(self, buffer: SampleBuffer) -> TempoResult:
        frame_size = int(self.config.get("beat_frame_size", DEFAULT_BEAT_FRAME_SIZE))
        if len(buffer) < frame_size * 2:
            return TempoResult()

        beats = detect_beats(buffer, self.config)
        if beats is None:
            return TempoResult()

        segments, bpm = build_tempo_map(beats, buffer.duration, self.config)
        return TempoResult(segments=segments, bpm=bpm, beat_timestamps=beats)


def create_tempo_estimator(config: dict, decode_backend: str = "ffmpeg") -> TempoEstimator:
    """
    Pick a tempo strategy.

    Args:
        config: Tempo config dict; strategy is "autocorrelation", "beats" or
                "auto" (beats with the in-process aubio decoder, else
                autocorrelation)
        decode_backend: Decoder backend in use

    Returns:
        TempoEstimator instance
    """
    strategy = config.get("strategy", "auto")
    if strategy == "auto":
        strategy = "beats" if decode_backend == "aubio" else "autocorrelation"

    if strategy == "beats":
        return BeatTrackingTempoEstimator(config)
    return AutocorrelationTempoEstimator(config)


def detect_bpm(buffer: SampleBuffer, config: dict, decode_backend: str = "ffmpeg") -> TempoResult:
    """
    Estimate the tempo curve of a decoded track.

    Args:
        buffer: Decoded mono audio
        config: Tempo config dict
        decode_backend: Decoder backend, used by strategy "auto"

    Returns:
        TempoResult (rounded); empty segments and bpm None when no tempo was found
    """
    estimator = create_tempo_estimator(config, decode_backend)
    result = estimator.estimate(buffer)

    if result.bpm is not None:
        logger.info(
            f"✅ BPM detected: {result.bpm:.1f} "
            f"({len(result.segments)} segment(s), method: {estimator.name})"
        )
    else:
        logger.warning(f"No tempo found (method: {estimator.name})")
    return result
