"""
Lavalier Audio Sync

Estimates the offset between a camera clip's audio and an externally
recorded lavalier track, with a calibrated confidence.
"""

__version__ = "1.0.0"

from .analysis import LavalierSync, classify, extract_features, synchronize, synchronize_lavalier
from .core.control import CancellationToken
from .core.types import (
    AlgorithmResult,
    AnalysisWindow,
    ContentLabel,
    FeatureBundle,
    PcmBuffer,
    SyncOptions,
    SyncQuality,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "synchronize",
    "synchronize_lavalier",
    "extract_features",
    "classify",
    "LavalierSync",
    "CancellationToken",
    "AlgorithmResult",
    "AnalysisWindow",
    "ContentLabel",
    "FeatureBundle",
    "PcmBuffer",
    "SyncOptions",
    "SyncQuality",
    "SyncResult",
    "SyncStatus",
]
