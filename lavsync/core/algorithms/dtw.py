"""
Multi-scale subsequence dynamic time warping on cepstral features.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import librosa
import numpy as np
from librosa.util.exceptions import ParameterError
from scipy.spatial.distance import cdist

from ...config import settings
from ..control import Checkpoint
from ..types import AlgorithmResult, ContentLabel, FeatureBundle
from .base import SyncAlgorithm, base_offset, is_flat

logger = logging.getLogger(__name__)

DEFAULT_SCALES = (8, 4, 2, 1)

# Per-scale lag variance (in frames^2) at which the consistency factor hits zero
_VARIANCE_SCALE = 100.0


class DTWSync(SyncAlgorithm):
    """
    Slope-constrained subsequence DTW of a's MFCCs inside b's, coarse to fine.

    a's window may start anywhere in b's search range. Steps are (1, 1),
    (1, s) and (s, 1), so the local slope of the path stays within [1/s, s];
    ties resolve in that order. c0 is left out because it follows the gain,
    and every remaining coefficient is divided by its spread in a.

    At each scale the warping path's dominant diagonal (the modal lag and
    its +/-1 neighbours) gives the offset; its average cost and the share of
    the path it covers give the confidence. Scales are averaged with weights
    proportional to their resolution and penalised when they disagree.
    """

    name = "DTW"

    EXPECTED_ACCURACY = {
        ContentLabel.SPEECH: 0.90,
        ContentLabel.MUSIC: 0.85,
        ContentLabel.MIXED: 0.80,
        ContentLabel.SILENCE: 0.20,
        ContentLabel.NOISE: 0.40,
        ContentLabel.UNKNOWN: 0.70,
    }

    def __init__(self, max_offset_seconds: Optional[float] = None,
                 scales: Sequence[int] = DEFAULT_SCALES,
                 slope: Optional[float] = None,
                 cost_scale: Optional[float] = None,
                 floor: Optional[float] = None):
        super().__init__(max_offset_seconds=max_offset_seconds, floor=floor)
        self.scales = tuple(int(s) for s in scales)
        self.slope = settings.DTW_SLOPE if slope is None else float(slope)
        self.cost_scale = settings.DTW_COST_SCALE if cost_scale is None else float(cost_scale)
        if not self.scales or min(self.scales) < 1:
            raise ValueError(f"DTW scales must be positive integers, got {scales}")
        if self.slope < 1.0:
            raise ValueError(f"DTW slope must be >= 1, got {self.slope}")

        stride = int(round(self.slope))
        steps = [[1, 1]]
        weights = [1.0]
        if stride > 1:
            # An (s, 1) step skips s - 1 frames of a; their cost is charged to the landing cell
            steps += [[1, stride], [stride, 1]]
            weights += [1.0, float(stride)]
        self.step_sizes = np.array(steps, dtype=np.int64)
        self.step_weights = np.array(weights, dtype=np.float64)

    def _estimate(self, features_a: FeatureBundle, features_b: FeatureBundle,
                  checkpoint: Checkpoint) -> AlgorithmResult:
        if features_a.mfcc.shape[0] != features_b.mfcc.shape[0]:
            return AlgorithmResult.abstain(self.name, "feature_mismatch")

        c1, c2 = _cepstra(features_a.mfcc), _cepstra(features_b.mfcc)
        if is_flat(c1) or is_flat(c2):
            return AlgorithmResult.abstain(self.name, "flat_features")
        spread = np.std(c1, axis=1, keepdims=True)
        spread = np.maximum(spread, 1e-3 * float(np.max(spread)))
        c1, c2 = c1 / spread, c2 / spread

        base = base_offset(features_a, features_b)
        frame_seconds = features_a.frame_seconds

        lags: List[float] = []
        weights: List[float] = []
        confidences: List[float] = []
        per_scale = []
        for scale in self.scales:
            checkpoint.check()
            s1, s2 = c1[:, ::scale], c2[:, ::scale]
            if s1.shape[1] < 2 or s2.shape[1] < s1.shape[1]:
                per_scale.append({"scale": scale, "skipped": "too_short"})
                continue
            aligned = self._align(s1, s2)
            if aligned is None:
                per_scale.append({"scale": scale, "skipped": "no_path"})
                continue
            lag, confidence, coverage = aligned
            if abs(base + lag * scale * frame_seconds) > self.max_offset_seconds:
                per_scale.append({"scale": scale, "skipped": "out_of_range", "lag_frames": lag * scale})
                continue
            lags.append(lag * scale)
            weights.append(1.0 / scale)
            confidences.append(confidence)
            per_scale.append({"scale": scale, "lag_frames": lag * scale,
                              "confidence": confidence, "coverage": coverage})

        if not lags:
            return AlgorithmResult.abstain(self.name, "no_valid_scale", scales=per_scale)

        # Running average, finer scales weigh more
        offset_frames = lags[0]
        total_weight = weights[0]
        for lag, weight in zip(lags[1:], weights[1:]):
            offset_frames = (offset_frames * total_weight + lag * weight) / (total_weight + weight)
            total_weight += weight

        weight_array = np.asarray(weights)
        confidence = float(np.dot(weight_array, confidences) / weight_array.sum())
        variance = float(np.var(lags)) if len(lags) > 1 else 0.0
        consistency = max(0.0, 1.0 - variance / _VARIANCE_SCALE)

        return AlgorithmResult(
            algorithm=self.name,
            offset_seconds=base + offset_frames * frame_seconds,
            confidence=confidence * consistency,
            details={
                "lag_frames": offset_frames,
                "scale_variance": variance,
                "consistency": consistency,
                "scales": per_scale,
            },
        )

    def _align(self, s1: np.ndarray, s2: np.ndarray) -> Optional[Tuple[float, float, float]]:
        """
        Find a's sequence inside b's at one scale.

        Returns:
            ``(lag, confidence, coverage)`` with ``lag`` in frames of this scale,
            or None when no path fits under the step constraint
        """
        cost = cdist(s1.T, s2.T, metric="cityblock") / s1.shape[0]
        try:
            _, path = librosa.sequence.dtw(
                C=cost,
                step_sizes_sigma=self.step_sizes,
                weights_add=np.zeros(len(self.step_sizes)),
                weights_mul=self.step_weights,
                subseq=True,
                backtrack=True,
            )
        except ParameterError as e:
            logger.debug(f"No warping path at this scale: {e}")
            return None

        path = path[::-1]
        path_lags = path[:, 1] - path[:, 0]
        values, counts = np.unique(path_lags, return_counts=True)
        modal = values[int(np.argmax(counts))]
        on_diagonal = np.abs(path_lags - modal) <= 1

        lag = float(np.mean(path_lags[on_diagonal]))
        coverage = float(np.count_nonzero(on_diagonal)) / len(path)
        diagonal_cost = float(np.mean(cost[path[on_diagonal, 0], path[on_diagonal, 1]]))
        confidence = max(0.0, 1.0 - diagonal_cost / self.cost_scale) * min(1.0, 2.0 * coverage)
        return lag, confidence, coverage


def _cepstra(mfcc: np.ndarray) -> np.ndarray:
    """Coefficients used for matching: everything but c0 when there is more than one row."""
    mfcc = np.asarray(mfcc, dtype=np.float64)
    return mfcc[1:] if mfcc.shape[0] > 1 else mfcc
