"""
Integration tests for get_song_analysis.

The decoder is mocked to return synthetic buffers; cache, tempo and key
estimation run for real.
"""

import os
import pytest
import numpy as np
from unittest.mock import patch

from tempokey.analysis import analyze_buffer, get_song_analysis
from tempokey.cache import AnalysisCache, CacheError
from tempokey.models import SampleBuffer

from conftest import SAMPLE_RATE, make_chord, make_click_track


@pytest.fixture
def song_buffer():
    """40 s of 120 BPM clicks over a C major chord."""
    clicks = make_click_track(120.0, 40.0)
    chord = make_chord([261.63, 329.63, 392.00, 523.25], 40.0)
    return SampleBuffer(samples=clicks + 0.3 * chord, sample_rate=SAMPLE_RATE)


@pytest.fixture
def audio_file(tmp_path):
    """Source file on disk; its content is never decoded for real."""
    path = tmp_path / "music" / "song.flac"
    path.parent.mkdir()
    path.write_bytes(b"fLaC" + b"\x00" * 256)
    return path


@pytest.fixture
def cache_dir(tmp_path):
    return str(tmp_path / "cache")


class TestAnalyzeBuffer:
    """Test concurrent tempo + key estimation."""

    def test_click_chord(self, config, song_buffer):
        """Both estimators report on the same buffer."""
        analysis = analyze_buffer(song_buffer, config)
        assert analysis.bpm == pytest.approx(120.0, abs=2.0)
        assert analysis.key.name == "C major"
        assert analysis.beat_timestamps is None

    def test_estimator_crash_degrades(self, config, song_buffer):
        """A crashing key estimator leaves key None but keeps the tempo."""
        with patch("tempokey.analysis.estimate_key", side_effect=RuntimeError("boom")):
            analysis = analyze_buffer(song_buffer, config)
        assert analysis.key is None
        assert analysis.bpm is not None


class TestGetSongAnalysis:
    """Test the cached analysis entry point."""

    def test_first_call_analyzes_and_caches(self, config, audio_file, cache_dir, song_buffer):
        """Miss -> decode, analyze, persist."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer) as mock_decode:
            analysis = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        mock_decode.assert_called_once()
        assert analysis.bpm == pytest.approx(120.0, abs=2.0)
        assert analysis.key.name == "C major"
        assert os.path.exists(os.path.join(cache_dir, "analysis", "song-1.json"))

    def test_idempotent_without_redecode(self, config, audio_file, cache_dir, song_buffer):
        """Second call returns the same analysis from cache."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer) as mock_decode:
            first = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)
            second = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert mock_decode.call_count == 1
        assert second == first

    def test_invalidated_by_mtime(self, config, audio_file, cache_dir, song_buffer):
        """Touching the file forces re-analysis."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer) as mock_decode:
            get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

            st = os.stat(audio_file)
            os.utime(audio_file, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
            get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert mock_decode.call_count == 2

    def test_invalidated_by_size(self, config, audio_file, cache_dir, song_buffer):
        """Rewriting the file with a different size forces re-analysis."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer) as mock_decode:
            get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

            st = os.stat(audio_file)
            audio_file.write_bytes(b"fLaC" + b"\x00" * 512)
            os.utime(audio_file, ns=(st.st_atime_ns, st.st_mtime_ns))
            get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert mock_decode.call_count == 2

    def test_force_recomputes(self, config, audio_file, cache_dir, song_buffer):
        """force=True skips the cache read."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer) as mock_decode:
            get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)
            get_song_analysis(str(audio_file), cache_dir, "song-1", force=True, config=config)

        assert mock_decode.call_count == 2

    def test_missing_file(self, config, tmp_path, cache_dir):
        """Missing source -> None, nothing decoded or cached."""
        with patch("tempokey.analysis.decode_audio") as mock_decode:
            result = get_song_analysis(str(tmp_path / "gone.mp3"), cache_dir, "song-1", config=config)

        assert result is None
        mock_decode.assert_not_called()
        assert not os.path.exists(os.path.join(cache_dir, "analysis"))

    def test_decode_failure(self, config, audio_file, cache_dir):
        """Decoder failure -> None and no cache entry."""
        with patch("tempokey.analysis.decode_audio", return_value=None):
            result = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert result is None
        assert AnalysisCache(cache_dir).read_entry("song-1") is None

    def test_silence(self, config, audio_file, cache_dir, silent_buffer):
        """Silent audio -> bpm None, no segments, key None."""
        with patch("tempokey.analysis.decode_audio", return_value=silent_buffer):
            analysis = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert analysis.bpm is None
        assert analysis.bpm_segments == []
        assert analysis.key is None

    def test_cache_write_error_propagates(self, config, audio_file, cache_dir, song_buffer):
        """Failure to persist is reported to the caller."""
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer), \
                patch.object(AnalysisCache, "write", side_effect=CacheError("disk full")):
            with pytest.raises(CacheError):
                get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

    def test_beat_strategy_exposes_timestamps(self, config, audio_file, cache_dir, silent_buffer):
        """Beat-tracking results carry beat timestamps through the cache."""
        config.data["decode"]["backend"] = "aubio"
        beats = [float(t) for t in np.arange(0, 10, 0.5)]

        with patch("tempokey.analysis.decode_audio", return_value=silent_buffer), \
                patch("tempokey.analyze.bpm.detect_beats", return_value=beats):
            first = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)
            cached = get_song_analysis(str(audio_file), cache_dir, "song-1", config=config)

        assert first.bpm == 120.0
        assert first.beat_timestamps == beats
        assert cached.beat_timestamps == beats

    def test_default_config_loaded(self, audio_file, cache_dir, song_buffer, tmp_path, monkeypatch):
        """Without a config, the file named by TEMPOKEY_CONFIG_PATH is used."""
        monkeypatch.setenv("TEMPOKEY_CONFIG_PATH", str(tmp_path / "missing.toml"))
        with patch("tempokey.analysis.decode_audio", return_value=song_buffer):
            analysis = get_song_analysis(str(audio_file), cache_dir, "song-1")
        assert analysis.bpm == pytest.approx(120.0, abs=2.0)
