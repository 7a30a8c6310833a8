"""
Analysis Module: decode audio and estimate tempo and key.

- Decoding is delegated to ffmpeg (process) or aubio (in-process)
- Tempo and key estimators are pure and share one read-only buffer
- Failures degrade to empty results, never exceptions
"""

__all__ = ["decode", "bpm", "key"]
