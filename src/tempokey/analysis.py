"""
Song analysis entry point: cache lookup, decode, tempo + key, cache write.

Decode and estimation failures degrade to None / empty fields so a missing
analysis never breaks playback. Only cache write failures (CacheError)
propagate to the caller.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, TypeVar

from tempokey.analyze.bpm import detect_bpm
from tempokey.analyze.decode import decode_audio
from tempokey.analyze.key import estimate_key
from tempokey.cache import AnalysisCache, stat_source
from tempokey.config import Config
from tempokey.models import SampleBuffer, SongAnalysis, TempoResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _result_or(future: "Future[T]", fallback: T, label: str) -> T:
    try:
        return future.result()
    except Exception as e:
        logger.error(f"{label} estimation crashed: {e}", exc_info=True)
        return fallback


def analyze_buffer(buffer: SampleBuffer, config: Config) -> SongAnalysis:
    """
    Run tempo and key estimation on a decoded buffer.

    The two estimators are independent and read the buffer concurrently.

    Args:
        buffer: Decoded mono audio (read-only)
        config: Config instance

    Returns:
        SongAnalysis; bpm/key are None when no signal was found
    """
    backend = config.get("decode", "backend", "ffmpeg")

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="tempokey") as executor:
        tempo_future = executor.submit(detect_bpm, buffer, config["tempo"], backend)
        key_future = executor.submit(estimate_key, buffer, config["key"])

        tempo = _result_or(tempo_future, TempoResult(), "Tempo")
        key = _result_or(key_future, None, "Key")

    return SongAnalysis(
        bpm=tempo.bpm,
        bpm_segments=tempo.segments,
        key=key,
        beat_timestamps=tempo.beat_timestamps,
    )


def get_song_analysis(
    audio_path: str,
    cache_dir: str,
    song_id: str,
    force: bool = False,
    config: Optional[Config] = None,
) -> Optional[SongAnalysis]:
    """
    Tempo and key analysis for one song, served from cache when fresh.

    Steps:
    1. Stat the audio file (missing -> None, cache untouched)
    2. Unless force, return the cached analysis if mtime and size match
    3. Decode (failure or empty -> None, cache untouched)
    4. Estimate tempo and key concurrently
    5. Write through the cache and return

    Args:
        audio_path: Path to the song's audio file
        cache_dir: Cache root directory
        song_id: Stable song identifier (used as the cache file name)
        force: Skip the cache read and recompute
        config: Config instance (default: Config.load())

    Returns:
        SongAnalysis, or None if the analysis is unavailable

    Raises:
        CacheError: If the computed analysis cannot be persisted
        ValueError: If song_id is not usable as a cache key
    """
    if config is None:
        config = Config.load()

    stat = stat_source(audio_path)
    if stat is None:
        logger.warning(f"Audio file unavailable: {audio_path}")
        return None

    cache = AnalysisCache(cache_dir)
    if not force:
        cached = cache.read(song_id, stat)
        if cached is not None:
            return cached

    start_time = time.time()
    buffer = decode_audio(audio_path, config["decode"])
    if buffer is None or len(buffer) == 0:
        logger.warning(f"Decoding failed, analysis unavailable: {audio_path}")
        return None

    analysis = analyze_buffer(buffer, config)
    del buffer

    cache.write(song_id, stat, analysis)

    key_name = analysis.key.name if analysis.key else "unknown"
    bpm_label = f"{analysis.bpm:.1f} BPM" if analysis.bpm is not None else "no tempo"
    logger.info(
        f"✅ Analyzed {song_id}: {bpm_label}, key: {key_name} "
        f"({time.time() - start_time:.1f}s)"
    )
    return analysis
