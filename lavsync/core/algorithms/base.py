"""
Common contract for offset estimators.

Every estimator maps two feature bundles to an ``AlgorithmResult``. They
never raise: numerical trouble, empty input and interruption all come back
as a zero-confidence (abstaining) result so the fusion layer stays the only
place that decides what to do with disagreement.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import numpy as np
from librosa.util.exceptions import ParameterError

from ...config import settings
from ..control import NEVER, Checkpoint, Interrupted
from ..types import AlgorithmResult, ContentLabel, FeatureBundle

logger = logging.getLogger(__name__)


class SyncAlgorithm(ABC):
    """Base class for synchronization algorithms."""

    name = "Base"

    # Prior accuracy per content type; reported in the trace, not used for weighting
    EXPECTED_ACCURACY: Dict[ContentLabel, float] = {}

    def __init__(self, max_offset_seconds: Optional[float] = None, floor: Optional[float] = None,
                 min_overlap: Optional[float] = None):
        self.max_offset_seconds = settings.MAX_OFFSET if max_offset_seconds is None else max_offset_seconds
        self.floor = settings.ALGORITHM_FLOOR if floor is None else floor
        self.min_overlap = settings.MIN_WINDOW_OVERLAP if min_overlap is None else min_overlap

    def run(self, features_a: FeatureBundle, features_b: FeatureBundle,
            checkpoint: Checkpoint = NEVER) -> AlgorithmResult:
        """Estimate the offset of b relative to a; positive means b is later."""
        start = time.perf_counter()
        reason = checkpoint.interrupted()
        if reason is not None:
            return AlgorithmResult.abstain(self.name, reason)

        if features_a.is_empty or features_b.is_empty:
            result = AlgorithmResult.abstain(self.name, "empty_features")
        else:
            try:
                with np.errstate(divide="ignore", invalid="ignore"):
                    result = self._estimate(features_a, features_b, checkpoint)
            except Interrupted as exc:
                result = AlgorithmResult.abstain(self.name, exc.reason)
            except (ValueError, FloatingPointError, np.linalg.LinAlgError, ParameterError) as exc:
                logger.warning(f"{self.name} failed numerically: {exc}")
                result = AlgorithmResult.abstain(self.name, "numerical_failure", error=str(exc))

        if 0.0 < result.confidence < self.floor:
            result.details["raw_confidence"] = result.confidence
            result.confidence = 0.0
            result.reason = "below_floor"

        result.computation_time = time.perf_counter() - start
        logger.debug(f"{self.name}: offset={result.offset_seconds:.4f}s "
                     f"confidence={result.confidence:.3f} reason={result.reason}")
        return result

    def expected_accuracy(self, content: ContentLabel) -> float:
        return self.EXPECTED_ACCURACY.get(content, self.EXPECTED_ACCURACY.get(ContentLabel.UNKNOWN, 0.5))

    def lag_bounds(self, n1: int, n2: int, frame_seconds: float,
                   base_seconds: float = 0.0) -> Optional[Tuple[int, int]]:
        """
        Inclusive range of b-lags worth searching.

        Lag ``m`` pairs frame ``n`` of a with frame ``n + m`` of b, i.e. an
        offset of ``base_seconds + m * frame_seconds``. Kept lags stay within
        the maximum offset and leave at least ``min_overlap`` of a on b.
        """
        if n1 < 1 or n2 < 1 or frame_seconds <= 0:
            return None
        need = max(1, int(math.ceil(self.min_overlap * n1 - 1e-9)))
        lo = max(need - n1, int(math.ceil((-self.max_offset_seconds - base_seconds) / frame_seconds - 1e-9)))
        hi = min(n2 - need, int(math.floor((self.max_offset_seconds - base_seconds) / frame_seconds + 1e-9)))
        if lo > hi:
            return None
        return lo, hi

    @abstractmethod
    def _estimate(self, features_a: FeatureBundle, features_b: FeatureBundle,
                  checkpoint: Checkpoint) -> AlgorithmResult:
        """Run the estimator on two non-empty bundles."""


def base_offset(features_a: FeatureBundle, features_b: FeatureBundle) -> float:
    """Seconds from the start of a's bundle to the start of b's, in source time."""
    return features_b.start_seconds - features_a.start_seconds


def is_flat(values: np.ndarray, tolerance: Optional[float] = None) -> bool:
    """True when every row barely moves compared with its largest magnitude."""
    tolerance = settings.FLAT_TOLERANCE if tolerance is None else tolerance
    values = np.atleast_2d(np.asarray(values, dtype=np.float64))
    if values.size == 0:
        return True
    spread = np.std(values, axis=-1)
    scale = np.max(np.abs(values), axis=-1)
    return bool(np.all(spread <= tolerance * scale + 1e-12))
