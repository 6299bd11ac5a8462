"""
Fusion of per-algorithm results into one offset and a calibrated confidence.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ..config import settings
from .types import AlgorithmResult, AnalysisWindow, ContentLabel, FeatureBundle
from .window import window_supports_offset

logger = logging.getLogger(__name__)

# Nominal weight of each algorithm per content type
WEIGHT_TABLE: Dict[ContentLabel, Dict[str, float]] = {
    ContentLabel.SPEECH: {"CrossCorrelation": 0.40, "DTW": 0.40, "Onset": 0.10, "Spectral": 0.10},
    ContentLabel.MUSIC: {"CrossCorrelation": 0.20, "DTW": 0.30, "Onset": 0.30, "Spectral": 0.20},
    ContentLabel.MIXED: {"CrossCorrelation": 0.30, "DTW": 0.30, "Onset": 0.20, "Spectral": 0.20},
    ContentLabel.SILENCE: {"CrossCorrelation": 0.70, "DTW": 0.20, "Onset": 0.05, "Spectral": 0.05},
    ContentLabel.NOISE: {"CrossCorrelation": 0.50, "DTW": 0.30, "Onset": 0.10, "Spectral": 0.10},
    ContentLabel.UNKNOWN: {"CrossCorrelation": 0.35, "DTW": 0.35, "Onset": 0.15, "Spectral": 0.15},
}

CEPSTRAL_BOOST = 1.10
ONSET_BOOST = 1.05
ONSET_BOOST_MIN = 5
LARGE_OFFSET_PENALTY = 0.80
LARGE_OFFSET_SECONDS = 10.0


@dataclass
class FusedEstimate:
    """Fused offset/confidence; ``confidence == 0`` means abstain with ``reason``."""
    offset_seconds: float = 0.0
    confidence: float = 0.0
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def abstained(self) -> bool:
        return self.confidence <= 0.0


def weights_for(content: ContentLabel) -> Dict[str, float]:
    return WEIGHT_TABLE.get(content, WEIGHT_TABLE[ContentLabel.UNKNOWN])


def weighted_median(values: Sequence[float], weights: Sequence[float]) -> float:
    values = np.asarray(values, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    order = np.argsort(values, kind="stable")
    cumulative = np.cumsum(weights[order])
    idx = int(np.searchsorted(cumulative, cumulative[-1] / 2.0))
    return float(values[order][idx])


def fuse_results(results: List[AlgorithmResult],
                 content: ContentLabel,
                 features_a: FeatureBundle,
                 features_b: FeatureBundle,
                 window: AnalysisWindow,
                 duration_a: float,
                 duration_b: float,
                 max_offset_seconds: Optional[float] = None,
                 agreement_tolerance: Optional[float] = None,
                 min_analysis_seconds: Optional[float] = None,
                 min_corroborating: Optional[int] = None,
                 solo_confidence: Optional[float] = None) -> FusedEstimate:
    """
    Combine algorithm results with the content-dependent weight table.

    Results further than ``agreement_tolerance`` from the weighted median are
    left out of the averages and flagged ``excluded`` in their details; the
    fused confidence is scaled by the share of effective weight that agreed.
    Fewer than ``min_corroborating`` agreeing results abstain unless one of
    them reaches ``solo_confidence``; the voters are then zeroed as
    ``uncorroborated`` with their raw confidence kept in the details.

    Args:
        results: One result per algorithm, in a fixed order
        content: Label selecting the weight vector
        features_a, features_b: Bundles the results were computed from
        window: Analysis window the bundles cover
        duration_a, duration_b: Full source durations, for the shifted-window check

    Returns:
        FusedEstimate; abstains when every input abstained or a sanity bound fails
    """
    max_offset_seconds = settings.MAX_OFFSET if max_offset_seconds is None else max_offset_seconds
    agreement_tolerance = settings.AGREEMENT_TOLERANCE if agreement_tolerance is None else agreement_tolerance
    min_analysis_seconds = settings.MIN_ANALYSIS_SECONDS if min_analysis_seconds is None else min_analysis_seconds

    weights = weights_for(content)
    effective = np.array([weights.get(r.algorithm, 0.0) * r.confidence for r in results], dtype=np.float64)
    total = float(effective.sum())
    details: Dict[str, Any] = {
        "weights": {r.algorithm: weights.get(r.algorithm, 0.0) for r in results},
        "effective_weights": {r.algorithm: float(w) for r, w in zip(results, effective)},
    }

    if total <= 0.0:
        return FusedEstimate(reason="all_abstained", details=details)

    offsets = np.array([r.offset_seconds for r in results], dtype=np.float64)
    voting = effective > 0
    median = weighted_median(offsets[voting], effective[voting])
    inliers = voting & (np.abs(offsets - median) <= agreement_tolerance)
    for result, vote, inlier in zip(results, voting, inliers):
        if vote and not inlier:
            result.details["excluded"] = True
            logger.debug(f"{result.algorithm} disagrees with the consensus "
                         f"({result.offset_seconds:.3f}s vs {median:.3f}s)")

    inlier_weight = float(effective[inliers].sum())
    confidences = np.array([r.confidence for r in results], dtype=np.float64)
    min_corroborating = settings.MIN_CORROBORATING if min_corroborating is None else min_corroborating
    solo_confidence = settings.SOLO_CONFIDENCE if solo_confidence is None else solo_confidence
    if (int(np.count_nonzero(inliers)) < min_corroborating
            and float(np.max(confidences[inliers])) < solo_confidence):
        # Too few estimators agree and none is sure enough to stand alone
        for result, vote in zip(results, voting):
            if vote:
                result.details["raw_confidence"] = result.confidence
                result.confidence = 0.0
                result.reason = "uncorroborated"
        details["median_offset"] = median
        logger.debug(f"Only {int(np.count_nonzero(inliers))} estimator(s) near {median:.3f}s, abstaining")
        return FusedEstimate(reason="uncorroborated", details=details)

    offset = float(np.dot(effective[inliers], offsets[inliers]) / inlier_weight)
    confidence = float(np.dot(effective[inliers], confidences[inliers]) / inlier_weight)
    agreement = inlier_weight / total
    confidence *= agreement

    if features_a.mfcc.size and features_b.mfcc.size:
        confidence *= CEPSTRAL_BOOST
    if features_a.onsets.size > ONSET_BOOST_MIN and features_b.onsets.size > ONSET_BOOST_MIN:
        confidence *= ONSET_BOOST
    if abs(offset) > LARGE_OFFSET_SECONDS:
        confidence *= LARGE_OFFSET_PENALTY
    confidence = min(max(confidence, 0.0), 1.0)

    details.update({
        "median_offset": median,
        "agreement": agreement,
        "inliers": [r.algorithm for r, ok in zip(results, inliers) if ok],
        "candidate_offset": offset,
    })

    if abs(offset) > max_offset_seconds:
        return FusedEstimate(reason="offset_out_of_range", details=details)
    if window.duration_seconds < min_analysis_seconds:
        return FusedEstimate(reason="window_too_short", details=details)
    if not window_supports_offset(window, offset, duration_a, duration_b):
        return FusedEstimate(reason="window_outside_source", details=details)

    return FusedEstimate(offset_seconds=offset, confidence=confidence, details=details)
