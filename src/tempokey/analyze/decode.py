"""
Audio decoding into a mono SampleBuffer at a fixed sample rate.

Two backends:
- ffmpeg subprocess (default): any container/codec ffmpeg understands,
  downmixed and resampled by ffmpeg itself
- aubio source (in-process): native rate and channels, downmixed by channel
  mean and linearly resampled here

Every failure (missing file, missing decoder, non-zero exit, timeout, empty
output) returns None. Callers treat that as "analysis unavailable".
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

import numpy as np

from tempokey.models import SampleBuffer

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 22050
DEFAULT_TIMEOUT_SECONDS = 120


def mix_to_mono(channels: np.ndarray) -> np.ndarray:
    """
    Downmix a (channels, samples) array by averaging across channels.

    A 1-D array is treated as already mono and returned as a float32 copy.
    """
    data = np.asarray(channels, dtype=np.float32)
    if data.ndim == 1:
        return data.copy()
    if data.shape[0] == 1:
        return data[0].copy()
    return data.mean(axis=0, dtype=np.float64).astype(np.float32)


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample by linear interpolation between neighbouring samples.

    Good enough for tempo/key estimation, not for archival audio.

    Args:
        samples: Mono input samples
        source_rate: Rate of the input in Hz
        target_rate: Desired rate in Hz

    Returns:
        float32 array of max(1, round(len / ratio)) samples
    """
    samples = np.asarray(samples, dtype=np.float32)
    if source_rate == target_rate or len(samples) == 0:
        return samples

    ratio = source_rate / target_rate
    new_length = max(1, int(round(len(samples) / ratio)))

    positions = np.arange(new_length, dtype=np.float64) * ratio
    left = np.minimum(np.floor(positions).astype(np.int64), len(samples) - 1)
    right = np.minimum(left + 1, len(samples) - 1)
    weight = positions - left

    left_values = samples[left].astype(np.float64)
    right_values = samples[right].astype(np.float64)
    return (left_values + (right_values - left_values) * weight).astype(np.float32)


def resolve_ffmpeg(config: dict) -> str:
    """Decoder binary: config value, then FFMPEG_PATH, then ffmpeg on PATH."""
    configured = config.get("ffmpeg_path") or os.getenv("FFMPEG_PATH")
    if configured:
        return configured
    return shutil.which("ffmpeg") or "ffmpeg"


def _decode_ffmpeg(audio_path: str, config: dict) -> Optional[SampleBuffer]:
    """
    Decode with an ffmpeg subprocess writing raw f32le mono PCM to stdout.

    Returns:
        SampleBuffer or None if decoding failed
    """
    sample_rate = int(config.get("sample_rate", DEFAULT_SAMPLE_RATE))
    timeout = config.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    ffmpeg = resolve_ffmpeg(config)

    cmd = [
        ffmpeg,
        "-i", audio_path,
        "-f", "f32le",
        "-ac", "1",
        "-ar", str(sample_rate),
        "-hide_banner",
        "-loglevel", "error",
        "pipe:1",
    ]

    try:
        logger.debug(f"Decoding with ffmpeg: {audio_path}")
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.warning(f"ffmpeg not found: {ffmpeg}")
        return None
    except subprocess.TimeoutExpired:
        logger.warning(f"ffmpeg timeout after {timeout}s: {audio_path}")
        return None
    except OSError as e:
        logger.warning(f"ffmpeg could not be started: {e}")
        return None

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", "ignore").strip()
        logger.warning(f"ffmpeg failed (exit {result.returncode}) for {audio_path}: {stderr}")
        return None

    sample_count = len(result.stdout) // 4
    if sample_count <= 0:
        logger.warning(f"ffmpeg produced no audio for {audio_path}")
        return None

    samples = np.frombuffer(result.stdout[: sample_count * 4], dtype="<f4").astype(np.float32)
    return SampleBuffer(samples=samples, sample_rate=sample_rate)


def _decode_aubio(audio_path: str, config: dict) -> Optional[SampleBuffer]:
    """
    Decode in-process with aubio at the file's native rate and channel count.

    Returns:
        SampleBuffer or None if decoding failed
    """
    try:
        import aubio

        sample_rate = int(config.get("sample_rate", DEFAULT_SAMPLE_RATE))
        hop_size = int(config.get("aubio_hop_size", 512))

        source = aubio.source(audio_path, samplerate=0, hop_size=hop_size, channels=0)
        native_rate = int(source.samplerate)
        logger.debug(
            f"Decoding with aubio: {audio_path} ({native_rate} Hz, {source.channels} ch)"
        )

        blocks = []
        try:
            while True:
                frames, num_read = source.do_multi()
                if num_read > 0:
                    blocks.append(np.array(frames[:, :num_read], dtype=np.float32))
                if num_read < hop_size:
                    break
        finally:
            source.close()

        if not blocks:
            logger.warning(f"aubio produced no audio for {audio_path}")
            return None

        mono = mix_to_mono(np.concatenate(blocks, axis=1))
        samples = resample_linear(mono, native_rate, sample_rate)
        return SampleBuffer(samples=samples, sample_rate=sample_rate)

    except ImportError:
        logger.warning("aubio not available")
        return None
    except Exception as e:
        logger.warning(f"aubio decode failed for {audio_path}: {e}")
        return None


def decode_audio(audio_path: str, config: dict) -> Optional[SampleBuffer]:
    """
    Decode an audio file into a mono SampleBuffer.

    Args:
        audio_path: Path to audio file (any format the backend understands)
        config: Decode config dict with:
            - backend: "ffmpeg" (default) or "aubio"
            - sample_rate: Target rate in Hz (default 22050)
            - ffmpeg_path, timeout_seconds, aubio_hop_size

    Returns:
        SampleBuffer, or None if the source is missing or decoding failed
    """
    if not Path(audio_path).is_file():
        logger.warning(f"Audio file not found: {audio_path}")
        return None

    backend = config.get("backend", "ffmpeg")
    if backend == "aubio":
        buffer = _decode_aubio(str(audio_path), config)
    else:
        buffer = _decode_ffmpeg(str(audio_path), config)

    if buffer is None or len(buffer) == 0:
        return None

    logger.debug(
        f"Decoded {buffer.duration:.1f}s @ {buffer.sample_rate} Hz via {backend}: {audio_path}"
    )
    return buffer
