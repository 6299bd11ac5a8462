"""
Sync core: feature extraction, estimators and fusion.
"""

from .decoder import ArrayDecoder, FFmpegDecoder, LibrosaDecoder
from .hybrid_sync import HybridSyncEngine

__all__ = ["ArrayDecoder", "FFmpegDecoder", "LibrosaDecoder", "HybridSyncEngine"]
