"""
Configuration management for tempokey.

Loads and validates TOML config against strict bounds.
All tunable analysis parameters are bounded and validated at load time.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Any, Optional
import toml
import logging

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when config validation fails."""
    pass


class Config:
    """Configuration loader and validator."""

    # Numeric bounds; None marks a non-numeric parameter
    PARAM_BOUNDS = {
        "decode": {
            "backend": None,
            "sample_rate": (8000, 48000),
            "ffmpeg_path": None,
            "timeout_seconds": (5, 1800),
            "aubio_hop_size": (256, 4096),
        },
        "tempo": {
            "strategy": None,
            "beat_detector": None,
            "bpm_min": (20, 120),
            "bpm_max": (120, 400),
            "window_seconds": (5, 120),
            "hop_seconds": (1, 120),
            "merge_tolerance": (0.0, 20.0),
            "frame_size": (256, 8192),
            "hop_size": (64, 4096),
            "peak_ratio": (0.1, 1.0),
            "moving_average_window": (1, 32),
            "glitch_ratio": (0.05, 1.0),
            "beat_frame_size": (256, 8192),
            "beat_hop_size": (64, 4096),
        },
        "key": {
            "frame_size": (1024, 16384),
            "hop_size": (256, 16384),
            "min_freq": (20, 1000),
            "max_freq": (1000, 11025),
            "max_seconds": (10, 600),
        },
        "cache": {
            "dir": None,
        },
    }

    ALLOWED_VALUES = {
        ("decode", "backend"): ("ffmpeg", "aubio"),
        ("tempo", "strategy"): ("auto", "autocorrelation", "beats"),
        ("tempo", "beat_detector"): ("aubio", "essentia"),
    }

    DEFAULT_CONFIG = {
        "config_version": "1.0",
        "decode": {
            "backend": "ffmpeg",
            "sample_rate": 22050,
            "ffmpeg_path": "",
            "timeout_seconds": 120,
            "aubio_hop_size": 512,
        },
        "tempo": {
            "strategy": "auto",
            "beat_detector": "aubio",
            "bpm_min": 60,
            "bpm_max": 200,
            "window_seconds": 30,
            "hop_seconds": 15,
            "merge_tolerance": 2.0,
            "frame_size": 1024,
            "hop_size": 512,
            "peak_ratio": 0.5,
            "moving_average_window": 4,
            "glitch_ratio": 0.3,
            "beat_frame_size": 1024,
            "beat_hop_size": 256,
        },
        "key": {
            "frame_size": 4096,
            "hop_size": 2048,
            "min_freq": 60,
            "max_freq": 5000,
            "max_seconds": 120,
        },
        "cache": {
            "dir": "cache",
        },
    }

    def __init__(self, config_dict: Dict[str, Any]):
        """Initialize config from dictionary."""
        self.data = config_dict
        self._validate()

    @classmethod
    def defaults(cls) -> "Config":
        """Config built purely from DEFAULT_CONFIG."""
        return cls(copy.deepcopy(cls.DEFAULT_CONFIG))

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """
        Load config from TOML file.

        Args:
            config_path: Path to tempokey.toml. If None, uses TEMPOKEY_CONFIG_PATH env var
                        or defaults to configs/tempokey.toml.

        Returns:
            Config instance.

        Raises:
            ConfigError: If config is invalid.
        """
        if config_path is None:
            config_path = os.getenv("TEMPOKEY_CONFIG_PATH", "configs/tempokey.toml")

        config_path = Path(config_path)

        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}. Using defaults.")
            return cls.defaults()

        try:
            config_dict = toml.load(config_path)
        except Exception as e:
            raise ConfigError(f"Failed to load config from {config_path}: {e}")

        logger.info(f"Loaded config from {config_path}")
        return cls(config_dict)

    def _validate(self) -> None:
        """
        Validate all config parameters against PARAM_BOUNDS and cross-field rules.

        Raises:
            ConfigError: If any parameter is out of bounds or inconsistent.
        """
        for section, params in self.PARAM_BOUNDS.items():
            if section not in self.data:
                logger.warning(f"Missing config section: {section}. Using defaults.")
                self.data[section] = copy.deepcopy(self.DEFAULT_CONFIG.get(section, {}))
                continue

            section_data = self.data[section]

            for param, bounds in params.items():
                if param not in section_data:
                    default_val = self.DEFAULT_CONFIG.get(section, {}).get(param)
                    if default_val is not None:
                        logger.warning(f"Missing param {section}.{param}. Using default: {default_val}")
                        section_data[param] = default_val
                    continue

                value = section_data[param]

                allowed = self.ALLOWED_VALUES.get((section, param))
                if allowed is not None and value not in allowed:
                    raise ConfigError(
                        f"Parameter {section}.{param}={value!r} must be one of {allowed}"
                    )

                if bounds is None:
                    continue

                min_val, max_val = bounds
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigError(f"Parameter {section}.{param}={value!r} is not numeric")
                if not (min_val <= value <= max_val):
                    raise ConfigError(
                        f"Parameter {section}.{param}={value} out of bounds "
                        f"[{min_val}, {max_val}]"
                    )

        self._validate_relations()
        logger.debug("✅ Config validation passed")

    def _validate_relations(self) -> None:
        tempo = self.data["tempo"]
        key = self.data["key"]

        if tempo["bpm_min"] >= tempo["bpm_max"]:
            raise ConfigError(
                f"tempo.bpm_min={tempo['bpm_min']} must be below tempo.bpm_max={tempo['bpm_max']}"
            )
        if tempo["hop_seconds"] > tempo["window_seconds"]:
            raise ConfigError("tempo.hop_seconds must not exceed tempo.window_seconds")
        if tempo["hop_size"] > tempo["frame_size"]:
            raise ConfigError("tempo.hop_size must not exceed tempo.frame_size")
        if tempo["beat_hop_size"] > tempo["beat_frame_size"]:
            raise ConfigError("tempo.beat_hop_size must not exceed tempo.beat_frame_size")
        if key["hop_size"] > key["frame_size"]:
            raise ConfigError("key.hop_size must not exceed key.frame_size")
        if key["min_freq"] >= key["max_freq"]:
            raise ConfigError("key.min_freq must be below key.max_freq")

    @property
    def cache_dir(self) -> str:
        """Cache directory; TEMPOKEY_CACHE_DIR overrides the config value."""
        return os.getenv("TEMPOKEY_CACHE_DIR") or self.get("cache", "dir", "cache")

    def get(self, section: str, param: str, default: Any = None) -> Any:
        """Get a config parameter safely."""
        return self.data.get(section, {}).get(param, default)

    def __getitem__(self, section: str) -> Dict[str, Any]:
        """Allow dict-like access: config["tempo"]"""
        return self.data.get(section, {})

    def __repr__(self) -> str:
        version = self.data.get('config_version', 'unknown')
        return f"Config(version={version})"
