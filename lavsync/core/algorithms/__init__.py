"""
Offset estimators sharing the ``SyncAlgorithm`` contract.
"""

from .base import SyncAlgorithm
from .cross_correlation import CrossCorrelationSync
from .dtw import DTWSync
from .onset import OnsetSync
from .spectral import SpectralSync

__all__ = [
    "SyncAlgorithm",
    "CrossCorrelationSync",
    "DTWSync",
    "OnsetSync",
    "SpectralSync",
]
