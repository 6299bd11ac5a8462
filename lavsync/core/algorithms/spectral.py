"""
Lag correlation of the spectral-centroid sequences.
"""

from typing import Optional

import numpy as np

from ..control import Checkpoint
from ..types import AlgorithmResult, ContentLabel, FeatureBundle
from .base import SyncAlgorithm, base_offset, is_flat

# Lags checked between checkpoint consultations
_LAG_BLOCK = 256


class SpectralSync(SyncAlgorithm):
    """
    Correlates the centroid tracks at every lag that leaves enough overlap;
    the correlation coefficient of the overlapping parts is the score and
    the confidence.
    """

    name = "Spectral"

    EXPECTED_ACCURACY = {
        ContentLabel.SPEECH: 0.70,
        ContentLabel.MUSIC: 0.90,
        ContentLabel.MIXED: 0.80,
        ContentLabel.SILENCE: 0.10,
        ContentLabel.NOISE: 0.25,
        ContentLabel.UNKNOWN: 0.65,
    }

    def __init__(self, max_offset_seconds: Optional[float] = None, floor: Optional[float] = None):
        super().__init__(max_offset_seconds=max_offset_seconds, floor=floor)

    def _estimate(self, features_a: FeatureBundle, features_b: FeatureBundle,
                  checkpoint: Checkpoint) -> AlgorithmResult:
        s1 = np.asarray(features_a.spectral_centroid, dtype=np.float64)
        s2 = np.asarray(features_b.spectral_centroid, dtype=np.float64)
        if is_flat(s1) or is_flat(s2):
            return AlgorithmResult.abstain(self.name, "flat_centroid")

        base = base_offset(features_a, features_b)
        n1, n2 = s1.size, s2.size
        bounds = self.lag_bounds(n1, n2, features_a.frame_seconds, base)
        if bounds is None:
            return AlgorithmResult.abstain(self.name, "search_range_too_small")

        lags = np.arange(bounds[0], bounds[1] + 1)
        scores = np.empty(lags.size, dtype=np.float64)
        for k, lag in enumerate(lags):
            if k % _LAG_BLOCK == 0:
                checkpoint.check()
            # b[i + lag] is compared with a[i]
            lo = max(0, -lag)
            hi = min(n1, n2 - lag)
            scores[k] = _correlation(s1[lo:hi], s2[lo + lag:hi + lag])

        best = int(np.argmax(scores))
        correlation = float(scores[best])
        return AlgorithmResult(
            algorithm=self.name,
            offset_seconds=base + float(lags[best]) * features_a.frame_seconds,
            confidence=min(max(correlation, 0.0), 1.0),
            details={
                "lag_frames": int(lags[best]),
                "correlation": correlation,
                "searched_lags": int(lags.size),
                "centroid_source": features_a.centroid_source,
            },
        )


def _correlation(x: np.ndarray, y: np.ndarray) -> float:
    if x.size < 2:
        return 0.0
    x = x - np.mean(x)
    y = y - np.mean(y)
    norm = float(np.linalg.norm(x) * np.linalg.norm(y))
    if norm <= 1e-12:
        return 0.0
    return float(np.dot(x, y)) / norm
