"""
Analysis data types and their JSON representation.

Serialized field names are camelCase (bpmSegments, beatTimestamps,
audioMtimeMs, ...) so cache files and API payloads share one layout.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np


PITCH_CLASSES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
MODES = ("major", "minor")


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """Mono float32 samples at a fixed rate, read-only after decode."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        samples = np.ascontiguousarray(self.samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError(f"SampleBuffer must be mono, got shape {samples.shape}")
        if self.sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")
        samples.flags.writeable = False
        object.__setattr__(self, "samples", samples)

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    def __len__(self) -> int:
        return len(self.samples)


@dataclass
class TempoSegment:
    """A span of the track with one tempo, in seconds."""

    start: float
    end: float
    bpm: float

    def to_dict(self) -> Dict[str, float]:
        return {"start": float(self.start), "end": float(self.end), "bpm": float(self.bpm)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TempoSegment":
        return cls(start=float(data["start"]), end=float(data["end"]), bpm=float(data["bpm"]))


@dataclass
class KeyEstimate:
    """Best-fitting key with a relative confidence margin in [0, 1]."""

    tonic: str
    mode: str
    confidence: float

    def __post_init__(self):
        if self.tonic not in PITCH_CLASSES:
            raise ValueError(f"Unknown tonic: {self.tonic!r}")
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode: {self.mode!r}")

    @property
    def name(self) -> str:
        return f"{self.tonic} {self.mode}"

    def to_dict(self) -> Dict[str, Any]:
        return {"tonic": self.tonic, "mode": self.mode, "confidence": float(self.confidence)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyEstimate":
        return cls(
            tonic=data["tonic"],
            mode=data["mode"],
            confidence=float(data["confidence"]),
        )


@dataclass
class TempoResult:
    """Output shared by every tempo estimator."""

    segments: List[TempoSegment] = field(default_factory=list)
    bpm: Optional[float] = None
    beat_timestamps: Optional[List[float]] = None


@dataclass
class SongAnalysis:
    """
    Persisted and returned unit of analysis.

    bpm and key are None when no reliable signal was found; bpm_segments is
    then empty. beat_timestamps is only filled by beat-tracking estimation.
    """

    bpm: Optional[float]
    bpm_segments: List[TempoSegment] = field(default_factory=list)
    key: Optional[KeyEstimate] = None
    beat_timestamps: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "bpm": None if self.bpm is None else float(self.bpm),
            "bpmSegments": [segment.to_dict() for segment in self.bpm_segments],
        }
        if self.beat_timestamps is not None:
            data["beatTimestamps"] = [float(t) for t in self.beat_timestamps]
        data["key"] = self.key.to_dict() if self.key else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SongAnalysis":
        if not isinstance(data, dict):
            raise TypeError(f"Expected analysis object, got {type(data).__name__}")

        bpm = data.get("bpm")
        beats = data.get("beatTimestamps")
        key = data.get("key")

        return cls(
            bpm=None if bpm is None else float(bpm),
            bpm_segments=[TempoSegment.from_dict(s) for s in data.get("bpmSegments", [])],
            key=KeyEstimate.from_dict(key) if key else None,
            beat_timestamps=None if beats is None else [float(t) for t in beats],
        )


@dataclass
class CacheEntry:
    """One cached analysis, valid while the source mtime and size are unchanged."""

    source_mtime_ms: float
    source_size: int
    analysis: SongAnalysis
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audioMtimeMs": self.source_mtime_ms,
            "audioSize": self.source_size,
            "analysis": self.analysis.to_dict(),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        if not isinstance(data, dict):
            raise TypeError(f"Expected cache entry object, got {type(data).__name__}")
        return cls(
            source_mtime_ms=float(data["audioMtimeMs"]),
            source_size=int(data["audioSize"]),
            analysis=SongAnalysis.from_dict(data["analysis"]),
            created_at=str(data["createdAt"]),
        )
