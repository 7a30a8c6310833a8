# tempokey: tempo & key analysis for a filesystem music library
# Package: src.tempokey

__version__ = "1.0.0.dev0"
__author__ = "tempokey Contributors"
__description__ = "Tempo curve and musical key estimation with a per-song analysis cache"

# Module structure:
#   - tempokey.analyze   : decoding, tempo (BPM) and key estimation
#   - tempokey.models    : analysis data types and their JSON form
#   - tempokey.cache     : per-song analysis cache keyed by source mtime/size
#   - tempokey.analysis  : get_song_analysis entry point
#   - tempokey.config    : Configuration management
