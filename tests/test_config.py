"""
Unit tests for configuration loading and validation.
"""

import pytest
from pathlib import Path

from tempokey.config import Config, ConfigError

REPO_CONFIG = Path(__file__).parent.parent / "configs" / "tempokey.toml"


def write_config(tmp_path, text):
    path = tmp_path / "tempokey.toml"
    path.write_text(text)
    return str(path)


class TestConfigLoad:
    """Test loading from disk and environment."""

    def test_repo_config_matches_defaults(self):
        """Shipped configs/tempokey.toml equals the built-in defaults."""
        assert Config.load(str(REPO_CONFIG)).data == Config.DEFAULT_CONFIG

    def test_missing_file_uses_defaults(self, tmp_path):
        """Missing file -> defaults."""
        config = Config.load(str(tmp_path / "absent.toml"))
        assert config["tempo"]["bpm_min"] == 60
        assert config["decode"]["sample_rate"] == 22050

    def test_env_path(self, tmp_path, monkeypatch):
        """TEMPOKEY_CONFIG_PATH selects the file."""
        path = write_config(tmp_path, "[tempo]\nbpm_min = 70\n")
        monkeypatch.setenv("TEMPOKEY_CONFIG_PATH", path)
        assert Config.load()["tempo"]["bpm_min"] == 70

    def test_partial_file_filled(self, tmp_path):
        """Missing sections and params fall back to defaults."""
        config = Config.load(write_config(tmp_path, "[tempo]\nbpm_min = 70\n"))
        assert config["tempo"]["bpm_max"] == 200
        assert config["key"]["frame_size"] == 4096
        assert config.get("cache", "dir") == "cache"

    def test_malformed_toml(self, tmp_path):
        """Unparseable TOML -> ConfigError."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, "[tempo\nbpm_min = "))

    def test_defaults_are_independent(self):
        """Mutating one default config does not leak into the next."""
        first = Config.defaults()
        first.data["tempo"]["bpm_min"] = 90
        assert Config.defaults()["tempo"]["bpm_min"] == 60


class TestConfigValidation:
    """Test bounds, enumerations and cross-field rules."""

    def test_out_of_bounds(self, tmp_path):
        """bpm_min below its bound -> ConfigError."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, "[tempo]\nbpm_min = 5\n"))

    def test_non_numeric(self, tmp_path):
        """String in a numeric param -> ConfigError."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, '[key]\nframe_size = "big"\n'))

    def test_unknown_backend(self, tmp_path):
        """Unknown decoder backend -> ConfigError."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, '[decode]\nbackend = "sox"\n'))

    def test_unknown_strategy(self, tmp_path):
        """Unknown tempo strategy -> ConfigError."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, '[tempo]\nstrategy = "magic"\n'))

    def test_bpm_range_inverted(self, tmp_path):
        """bpm_min must be below bpm_max."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, "[tempo]\nbpm_min = 120\nbpm_max = 120\n"))

    def test_hop_longer_than_window(self, tmp_path):
        """hop_seconds may not exceed window_seconds."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, "[tempo]\nwindow_seconds = 10\nhop_seconds = 20\n"))

    def test_beat_hop_defaults(self):
        """Beat tracker frames default to 1024/256, separate from the autocorrelation hop."""
        tempo = Config.defaults()["tempo"]
        assert tempo["beat_frame_size"] == 1024
        assert tempo["beat_hop_size"] == 256
        assert tempo["hop_size"] == 512

    def test_beat_hop_longer_than_frame(self, tmp_path):
        """beat_hop_size may not exceed beat_frame_size."""
        with pytest.raises(ConfigError):
            Config.load(write_config(tmp_path, "[tempo]\nbeat_frame_size = 512\nbeat_hop_size = 1024\n"))

    def test_key_band_inverted(self):
        """min_freq must be below max_freq."""
        data = Config.defaults().data
        data["key"]["min_freq"] = 1000
        data["key"]["max_freq"] = 1000
        with pytest.raises(ConfigError):
            Config(data)


class TestConfigAccess:
    """Test accessors."""

    def test_cache_dir_env_override(self, monkeypatch):
        """TEMPOKEY_CACHE_DIR overrides cache.dir."""
        monkeypatch.setenv("TEMPOKEY_CACHE_DIR", "/var/cache/tempokey")
        assert Config.defaults().cache_dir == "/var/cache/tempokey"

    def test_cache_dir_default(self, monkeypatch):
        """Without the env var, cache.dir is used."""
        monkeypatch.delenv("TEMPOKEY_CACHE_DIR", raising=False)
        assert Config.defaults().cache_dir == "cache"

    def test_get_default(self):
        """Unknown params return the given default."""
        assert Config.defaults().get("tempo", "nope", 42) == 42

    def test_repr(self):
        """repr shows the config version."""
        assert repr(Config.defaults()) == "Config(version=1.0)"


class TestPackageVersion:
    """Test package metadata."""

    def test_version_matches_pyproject(self):
        """tempokey.__version__ is the PEP 440 version declared in pyproject.toml."""
        import toml
        import tempokey

        pyproject = toml.load(Path(__file__).parent.parent / "pyproject.toml")
        assert tempokey.__version__ == pyproject["project"]["version"]
