"""
Per-song analysis cache.

One JSON file per song at <cache_dir>/analysis/<song_id>.json holding the
source file's mtime (ms) and size alongside the analysis. An entry is only
returned while both still match the file on disk; anything unreadable is a
miss. Writes replace the file atomically, last write wins.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from stat import S_ISREG
from typing import Optional

from tempokey.models import CacheEntry, SongAnalysis

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when an analysis cannot be persisted."""
    pass


@dataclass(frozen=True)
class SourceStat:
    """Identity of a source file version: mtime in milliseconds and size in bytes."""

    mtime_ms: float
    size: int


def stat_source(audio_path: str) -> Optional[SourceStat]:
    """
    Stat an audio file.

    Returns:
        SourceStat, or None if the file is missing, unreadable or not a file
    """
    try:
        st = os.stat(audio_path)
    except OSError as e:
        logger.debug(f"Cannot stat {audio_path}: {e}")
        return None

    if not S_ISREG(st.st_mode):
        return None

    return SourceStat(mtime_ms=st.st_mtime_ns / 1_000_000, size=st.st_size)


class AnalysisCache:
    """JSON file cache of SongAnalysis results, one file per song id."""

    SUBDIR = "analysis"

    def __init__(self, cache_dir: str = "cache"):
        """
        Args:
            cache_dir: Root cache directory; entries live under <cache_dir>/analysis/
        """
        self.cache_dir = Path(cache_dir)
        self.entries_dir = self.cache_dir / self.SUBDIR

    def path_for(self, song_id: str) -> Path:
        """
        Cache file path for a song.

        Raises:
            ValueError: If song_id is empty or could escape the cache directory
        """
        song_id = str(song_id)
        if (
            not song_id
            or song_id.startswith(".")
            or "/" in song_id
            or "\\" in song_id
            or "\x00" in song_id
        ):
            raise ValueError(f"Invalid song id for cache: {song_id!r}")
        return self.entries_dir / f"{song_id}.json"

    def read_entry(self, song_id: str) -> Optional[CacheEntry]:
        """
        Load the stored entry for a song regardless of freshness.

        Returns:
            CacheEntry, or None if absent, unreadable or malformed
        """
        path = self.path_for(song_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable cache entry {path}: {e}")
            return None

        try:
            return CacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed cache entry {path}: {e}")
            return None

    def read(self, song_id: str, stat: SourceStat) -> Optional[SongAnalysis]:
        """
        Cached analysis if it was computed from this exact file version.

        Args:
            song_id: Song identifier
            stat: Current SourceStat of the audio file

        Returns:
            SongAnalysis on a hit, None on a miss or stale entry
        """
        entry = self.read_entry(song_id)
        if entry is None:
            logger.debug(f"Cache miss: {song_id}")
            return None

        if entry.source_mtime_ms != stat.mtime_ms or entry.source_size != stat.size:
            logger.debug(f"Cache stale: {song_id}")
            return None

        logger.debug(f"Cache hit: {song_id}")
        return entry.analysis

    def write(self, song_id: str, stat: SourceStat, analysis: SongAnalysis) -> CacheEntry:
        """
        Persist an analysis, replacing any previous entry for the song.

        Args:
            song_id: Song identifier
            stat: SourceStat the analysis was computed from
            analysis: Result to store

        Returns:
            The stored CacheEntry

        Raises:
            CacheError: If the directory or file cannot be written
        """
        path = self.path_for(song_id)
        entry = CacheEntry(
            source_mtime_ms=stat.mtime_ms,
            source_size=stat.size,
            analysis=analysis,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{song_id}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                json.dump(entry.to_dict(), tmp, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise CacheError(f"Failed to write cache entry {path}: {e}") from e

        logger.debug(f"Cached analysis: {song_id}")
        return entry
