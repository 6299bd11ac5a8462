"""
Onset pattern matching.
"""

from typing import Optional

import numpy as np

from ...config import settings
from ..control import Checkpoint
from ..types import AlgorithmResult, ContentLabel, FeatureBundle
from .base import SyncAlgorithm, base_offset

MIN_ONSETS = 3

# Candidates scored between checkpoint consultations
_CANDIDATE_BLOCK = 256


class OnsetSync(SyncAlgorithm):
    """
    Aligns the two onset lists.

    Every difference between one of the first ``anchors`` onsets on one side
    and any onset on the other side is a candidate offset; the candidate that
    lines up the most onsets within the tolerance wins. Only onsets inside
    the overlap of the two tracks at that offset are counted, so the
    confidence is the onset density there times the share of them matched.
    """

    name = "Onset"

    EXPECTED_ACCURACY = {
        ContentLabel.SPEECH: 0.60,
        ContentLabel.MUSIC: 0.95,
        ContentLabel.MIXED: 0.75,
        ContentLabel.SILENCE: 0.05,
        ContentLabel.NOISE: 0.15,
        ContentLabel.UNKNOWN: 0.50,
    }

    def __init__(self, max_offset_seconds: Optional[float] = None,
                 tolerance_seconds: Optional[float] = None,
                 anchors: Optional[int] = None,
                 floor: Optional[float] = None):
        super().__init__(max_offset_seconds=max_offset_seconds, floor=floor)
        self.tolerance_seconds = settings.ONSET_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
        self.anchors = settings.ONSET_ANCHORS if anchors is None else anchors

    def _estimate(self, features_a: FeatureBundle, features_b: FeatureBundle,
                  checkpoint: Checkpoint) -> AlgorithmResult:
        o1 = np.asarray(features_a.onsets, dtype=np.int64)
        o2 = np.asarray(features_b.onsets, dtype=np.int64)
        if o1.size < MIN_ONSETS or o2.size < MIN_ONSETS:
            return AlgorithmResult.abstain(self.name, "too_few_onsets",
                                           onsets_a=int(o1.size), onsets_b=int(o2.size))

        frame_seconds = features_a.frame_seconds
        base = base_offset(features_a, features_b)
        n1, n2 = features_a.frame_count, features_b.frame_count
        # Onsets sit on the frame grid, so a match never needs to be closer than one frame
        tolerance = max(1.0, self.tolerance_seconds / frame_seconds)
        bounds = self.lag_bounds(n1, n2, frame_seconds, base)
        if bounds is None:
            return AlgorithmResult.abstain(self.name, "no_candidates")

        candidates = np.unique(np.concatenate((
            (o2[np.newaxis, :] - o1[:self.anchors, np.newaxis]).ravel(),
            (o2[:self.anchors, np.newaxis] - o1[np.newaxis, :]).ravel(),
        )))
        candidates = candidates[(candidates >= bounds[0]) & (candidates <= bounds[1])]
        if candidates.size == 0:
            return AlgorithmResult.abstain(self.name, "no_candidates")

        # Smaller |offset| first so ties keep the smaller shift
        candidates = candidates[np.argsort(np.abs(base + candidates * frame_seconds), kind="stable")]
        best_lag, best_score = 0, -1
        for k, lag in enumerate(candidates):
            if k % _CANDIDATE_BLOCK == 0:
                checkpoint.check()
            score = self._count_matches(o1 + lag, o2, tolerance)
            if score > best_score:
                best_lag, best_score = int(lag), score

        pairs = self._matched_differences(o1 + best_lag, o2, tolerance)
        refined = best_lag + float(np.mean(pairs)) if pairs.size else float(best_lag)

        # Onsets that could have found a partner at this lag
        shifted = o1 + best_lag
        overlap_a = int(np.count_nonzero((shifted >= 0) & (shifted < n2)))
        overlap_b = int(np.count_nonzero((o2 >= best_lag) & (o2 < best_lag + n1)))
        if min(overlap_a, overlap_b) < MIN_ONSETS:
            return AlgorithmResult.abstain(self.name, "too_few_onsets_in_overlap",
                                           lag_frames=refined, onsets_a=overlap_a, onsets_b=overlap_b)

        matched_fraction = min(1.0, best_score / float(max(overlap_a, overlap_b)))
        density = min(1.0, min(overlap_a, overlap_b) / 10.0)
        return AlgorithmResult(
            algorithm=self.name,
            offset_seconds=base + refined * frame_seconds,
            confidence=density * matched_fraction,
            details={
                "lag_frames": refined,
                "matched": int(best_score),
                "onsets_a": overlap_a,
                "onsets_b": overlap_b,
                "candidates": int(candidates.size),
            },
        )

    @staticmethod
    def _nearest(shifted: np.ndarray, reference: np.ndarray) -> np.ndarray:
        """Signed distance from each shifted onset to its nearest reference onset."""
        idx = np.searchsorted(reference, shifted)
        left = reference[np.clip(idx - 1, 0, reference.size - 1)]
        right = reference[np.clip(idx, 0, reference.size - 1)]
        to_left = left - shifted
        to_right = right - shifted
        return np.where(np.abs(to_left) <= np.abs(to_right), to_left, to_right)

    def _count_matches(self, shifted: np.ndarray, reference: np.ndarray, tolerance: float) -> int:
        return int(np.count_nonzero(np.abs(self._nearest(shifted, reference)) <= tolerance))

    def _matched_differences(self, shifted: np.ndarray, reference: np.ndarray, tolerance: float) -> np.ndarray:
        distances = self._nearest(shifted, reference)
        return distances[np.abs(distances) <= tolerance]
