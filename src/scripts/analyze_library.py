#!/usr/bin/env python3
"""
Analyze Music Library Script

Walks a music directory and fills the analysis cache (tempo curve + key)
for every audio file. Fresh cache entries are reused; --force recomputes.

Usage:
  python src/scripts/analyze_library.py [--force]

Environment:
  MUSIC_LIBRARY_PATH   library root (default data/music)
  TEMPOKEY_CONFIG_PATH config file (default configs/tempokey.toml)
  TEMPOKEY_CACHE_DIR   cache root (default from config)
"""

import sys
import logging
from pathlib import Path
import hashlib
import os
import gc

# Add src/ to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from tempokey.config import Config
from tempokey.analysis import get_song_analysis
from tempokey.cache import CacheError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Supported audio formats
AUDIO_FORMATS = {".mp3", ".m4a", ".flac", ".wav", ".aif", ".aiff", ".ogg"}


def song_id_for(file_path: Path, library_root: Path) -> str:
    """
    Stable song ID from the library-relative path.

    The file version is tracked by the cache (mtime/size), so the ID
    only has to identify the song.

    Args:
        file_path: Path to audio file.
        library_root: Library root directory.

    Returns:
        16-char hex song ID.
    """
    try:
        relative = file_path.resolve().relative_to(library_root.resolve())
    except ValueError:
        relative = file_path
    return hashlib.sha256(relative.as_posix().encode("utf-8")).hexdigest()[:16]


def discover_audio_files(library_path: str = "data/music") -> list:
    """
    Discover all audio files in music library.

    Args:
        library_path: Path to music library directory.

    Returns:
        Sorted list of audio file paths.
    """
    lib_path = Path(library_path)

    if not lib_path.exists():
        logger.warning(f"Library path not found: {library_path}")
        return []

    audio_files = [
        path for path in lib_path.rglob("*")
        if path.is_file() and path.suffix.lower() in AUDIO_FORMATS
    ]

    logger.info(f"Found {len(audio_files)} audio files in {library_path}")
    return sorted(audio_files)


def main(argv=None):
    """Main analysis entrypoint."""
    argv = sys.argv[1:] if argv is None else argv
    force = "--force" in argv

    try:
        logger.info("🔍 Starting library analysis...")

        config = Config.load()
        logger.info(f"Config loaded: {config}")

        library_path = os.getenv("MUSIC_LIBRARY_PATH", "data/music")
        library_root = Path(library_path)
        cache_dir = config.cache_dir

        audio_files = discover_audio_files(library_path)
        if not audio_files:
            logger.warning("No audio files found!")
            return 0

        analyzed = 0
        unavailable = 0

        for file_path in audio_files:
            song_id = song_id_for(file_path, library_root)
            analysis = get_song_analysis(
                str(file_path), cache_dir, song_id, force=force, config=config
            )

            if analysis is None:
                logger.warning(f"  ✗ Analysis unavailable: {file_path.name}")
                unavailable += 1
            else:
                bpm = f"{analysis.bpm:.1f} BPM" if analysis.bpm is not None else "no tempo"
                key = analysis.key.name if analysis.key else "unknown key"
                logger.info(f"  {file_path.name}: {bpm}, {key}")
                analyzed += 1

            # Decoded buffers are large; release them between tracks
            gc.collect()

        logger.info("")
        logger.info("=" * 60)
        logger.info("📊 Analysis Summary")
        logger.info("=" * 60)
        logger.info(f"  Analyzed:    {analyzed}")
        logger.info(f"  Unavailable: {unavailable}")
        logger.info(f"  Cache dir:   {cache_dir}")
        logger.info("=" * 60)
        logger.info("✅ Analysis complete")
        return 0

    except KeyboardInterrupt:
        logger.warning("Analysis interrupted by user")
        return 130
    except CacheError as e:
        logger.error(f"Cannot write analysis cache: {e}")
        return 1
    except Exception as e:
        logger.error(f"Analysis failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
