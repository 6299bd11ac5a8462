"""
Cross-correlation of energy envelopes.
"""

from typing import Optional

import numpy as np

from ...config import settings
from ..control import Checkpoint
from ..fft_plans import next_power_of_two
from ..types import AlgorithmResult, ContentLabel, FeatureBundle
from .base import SyncAlgorithm, base_offset, is_flat

# Envelope decimation used by the direct (non-FFT) path
DIRECT_DOWNSAMPLE = 4

PARABOLIC_BONUS = 1.1


class CrossCorrelationSync(SyncAlgorithm):
    """
    Normalized cross-correlation of the RMS envelopes.

    a's envelope is slid along b's, which counts as zero outside b's search
    range. At every lag the product sum is divided by the norm of a's
    envelope and the norm of the stretch of b underneath it, so identical
    content peaks at 1.0 regardless of the gain difference between the two
    microphones. Both sides are mean-removed first. An envelope that does not
    move at all has no mean-free shape; it is correlated raw instead, which
    lines it up with the edges of b's content.
    """

    name = "CrossCorrelation"

    EXPECTED_ACCURACY = {
        ContentLabel.SPEECH: 0.85,
        ContentLabel.MUSIC: 0.70,
        ContentLabel.MIXED: 0.75,
        ContentLabel.SILENCE: 0.10,
        ContentLabel.NOISE: 0.30,
        ContentLabel.UNKNOWN: 0.60,
    }

    def __init__(self, max_offset_seconds: Optional[float] = None,
                 padding_factor: int = 1,
                 use_fft: Optional[bool] = None,
                 floor: Optional[float] = None):
        super().__init__(max_offset_seconds=max_offset_seconds, floor=floor)
        self.padding_factor = max(1, int(padding_factor))
        self.use_fft = settings.USE_FFT if use_fft is None else use_fft

    def _estimate(self, features_a: FeatureBundle, features_b: FeatureBundle,
                  checkpoint: Checkpoint) -> AlgorithmResult:
        x = np.asarray(features_a.energy, dtype=np.float64)
        y = np.asarray(features_b.energy, dtype=np.float64)
        frame_seconds = features_a.frame_seconds
        step = 1

        if not self.use_fft:
            x, y = _decimate(x, DIRECT_DOWNSAMPLE), _decimate(y, DIRECT_DOWNSAMPLE)
            step = DIRECT_DOWNSAMPLE
            if x.size < 2 or y.size < 2:
                return AlgorithmResult.abstain(self.name, "empty_features")

        # A constant b offers nothing to line up with, whatever a looks like
        if np.linalg.norm(x) <= 1e-12 or is_flat(y):
            return AlgorithmResult.abstain(self.name, "flat_envelope")

        base = base_offset(features_a, features_b)
        bounds = self.lag_bounds(x.size, y.size, frame_seconds * step, base)
        if bounds is None or bounds[1] - bounds[0] < 2:
            return AlgorithmResult.abstain(self.name, "search_range_too_small")

        centred = not is_flat(x)
        template = x - np.mean(x) if centred else x

        checkpoint.check()
        if self.use_fft:
            products, lags = self._fft_correlation(template, y)
        else:
            products, lags = self._direct_correlation(template, y)
        in_range = (lags >= bounds[0]) & (lags <= bounds[1])
        products, lags = products[in_range], lags[in_range]
        corr = products / self._norms(template, y, lags, centred)

        peak_idx = int(np.argmax(corr))
        peak = float(corr[peak_idx])
        if peak_idx == 0 or peak_idx == corr.size - 1:
            return AlgorithmResult.abstain(self.name, "peak_on_boundary",
                                           lag_frames=int(lags[peak_idx]) * step, peak=peak)

        confidence = min(max(peak, 0.0), 1.0)
        correction = 0.0
        y1, y2, y3 = corr[peak_idx - 1], corr[peak_idx], corr[peak_idx + 1]
        curvature = (y1 - 2.0 * y2 + y3) / 2.0
        if abs(curvature) > 1e-12:
            correction = float(np.clip(-(y3 - y1) / (4.0 * curvature), -0.5, 0.5))
            confidence = min(1.0, confidence * PARABOLIC_BONUS)

        lag = (float(lags[peak_idx]) + correction) * step
        return AlgorithmResult(
            algorithm=self.name,
            offset_seconds=base + lag * frame_seconds,
            confidence=confidence,
            details={
                "peak": peak,
                "lag_frames": lag,
                "correction": correction,
                "method": "fft" if self.use_fft else "direct",
                "searched_lags": int(corr.size),
                "mean_removed": centred,
            },
        )

    def _fft_correlation(self, x: np.ndarray, y: np.ndarray):
        """Linear correlation via zero-padded FFT; returns values indexed by b-lag."""
        n1, n2 = x.size, y.size
        size = next_power_of_two(n1 + n2 - 1) * self.padding_factor
        spectrum = np.fft.rfft(x, size) * np.conj(np.fft.rfft(y, size))
        circular = np.fft.irfft(spectrum, size)
        # circular[m] = sum_n x[n + m] * y[n]; negative m wraps to the end
        linear = np.concatenate((circular[size - (n2 - 1):], circular[:n1]))
        return linear[::-1], np.arange(-(n1 - 1), n2)

    @staticmethod
    def _direct_correlation(x: np.ndarray, y: np.ndarray):
        linear = np.correlate(x, y, mode="full")
        return linear[::-1], np.arange(-(x.size - 1), y.size)

    @staticmethod
    def _norms(template: np.ndarray, y: np.ndarray, lags: np.ndarray, centred: bool) -> np.ndarray:
        """Product of the template norm and the norm of b under it at every lag."""
        n1, n2 = template.size, y.size
        sums = np.concatenate(([0.0], np.cumsum(y)))
        squares = np.concatenate(([0.0], np.cumsum(y ** 2)))
        lo = np.clip(lags, 0, n2)
        hi = np.clip(lags + n1, 0, n2)
        energy = squares[hi] - squares[lo]
        if centred:
            total = sums[hi] - sums[lo]
            spread = energy - total ** 2 / n1
            valid = spread > 1e-9 * energy
        else:
            spread = energy
            valid = spread > 0.0
        norms = np.linalg.norm(template) * np.sqrt(np.maximum(spread, 0.0))
        # Lags where b is constant under the template cannot correlate
        return np.where(valid, norms, np.inf)


def _decimate(values: np.ndarray, factor: int) -> np.ndarray:
    usable = (values.size // factor) * factor
    if usable == 0:
        return values[:0]
    return values[:usable].reshape(-1, factor).mean(axis=1)
