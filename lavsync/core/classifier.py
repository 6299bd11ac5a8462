"""
Content classification used to pick algorithm weights.

A fixed rule ladder over feature-bundle statistics. The thresholds are
tuning parameters, not theorems.
"""

from typing import Any, Dict

import numpy as np

from .types import ContentLabel, FeatureBundle

SILENCE_MEAN_ENERGY = 0.01
SILENCE_MAX_ENERGY = 0.05
NOISE_MIN_ZCR = 0.4
SPEECH_ZCR_RANGE = (0.1, 0.3)
SPEECH_MAX_ONSETS = 20
MUSIC_MAX_ZCR = 0.15
MUSIC_MIN_ONSETS = 15


def describe_content(features: FeatureBundle) -> Dict[str, Any]:
    """Statistics the rule ladder looks at."""
    if features.is_empty:
        return {"mean_energy": 0.0, "max_energy": 0.0, "mean_zcr": 0.0, "onset_count": 0}
    return {
        "mean_energy": float(np.mean(features.energy)),
        "max_energy": float(np.max(features.energy)),
        "mean_zcr": float(np.mean(features.zcr)) if features.zcr.size else 0.0,
        "onset_count": int(features.onsets.size),
    }


def classify_content(features: FeatureBundle) -> ContentLabel:
    """Label the dominant acoustic class of ``features``."""
    if features.is_empty:
        return ContentLabel.UNKNOWN

    stats = describe_content(features)
    mean_zcr = stats["mean_zcr"]
    onsets = stats["onset_count"]

    if stats["mean_energy"] < SILENCE_MEAN_ENERGY and stats["max_energy"] < SILENCE_MAX_ENERGY:
        return ContentLabel.SILENCE
    if mean_zcr > NOISE_MIN_ZCR:
        return ContentLabel.NOISE
    if SPEECH_ZCR_RANGE[0] <= mean_zcr <= SPEECH_ZCR_RANGE[1] and onsets < SPEECH_MAX_ONSETS:
        return ContentLabel.SPEECH
    if mean_zcr < MUSIC_MAX_ZCR and onsets > MUSIC_MIN_ONSETS:
        return ContentLabel.MUSIC
    return ContentLabel.MIXED
