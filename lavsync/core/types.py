"""
Value types shared by every stage of the sync core.

Everything here is produced inside a single ``synchronize`` call and dropped
when it returns; nothing is cached between calls.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import settings
from ..exceptions import InputInvalidError
from .control import CancellationToken

# Samples may exceed full scale by float rounding after resampling
_FULL_SCALE_TOLERANCE = 1e-6


class ContentLabel(str, Enum):
    """Dominant acoustic class of a feature bundle."""
    SPEECH = "speech"
    MUSIC = "music"
    MIXED = "mixed"
    SILENCE = "silence"
    NOISE = "noise"
    UNKNOWN = "unknown"


class SyncStatus(str, Enum):
    """Outcome kind returned alongside every result."""
    OK = "ok"
    ABSTAIN = "abstain"
    INPUT_INVALID = "input_invalid"
    DECODE_FAILED = "decode_failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class SyncQuality(str, Enum):
    """Processing quality modes."""
    REAL_TIME = "real_time"
    STANDARD = "standard"
    HIGH_QUALITY = "high_quality"


@dataclass
class PcmBuffer:
    """Mono floating-point audio segment starting ``start_seconds`` into its source."""
    samples: np.ndarray
    sample_rate: int
    start_seconds: float = 0.0

    def __post_init__(self):
        self.samples = np.asarray(self.samples, dtype=np.float32).reshape(-1)

    @property
    def n_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.n_samples / float(self.sample_rate) if self.sample_rate > 0 else 0.0

    def times(self) -> np.ndarray:
        """Timestamp of every sample in source seconds."""
        return self.start_seconds + np.arange(self.n_samples) / float(self.sample_rate)

    def validate(self, expected_sample_rate: Optional[int] = None) -> "PcmBuffer":
        if self.sample_rate <= 0:
            raise InputInvalidError(f"Sample rate must be positive, got {self.sample_rate}")
        if expected_sample_rate is not None and self.sample_rate != expected_sample_rate:
            raise InputInvalidError(
                f"Sample rate mismatch: decoder returned {self.sample_rate} Hz, "
                f"requested {expected_sample_rate} Hz"
            )
        if self.start_seconds < 0 or not math.isfinite(self.start_seconds):
            raise InputInvalidError(f"Invalid buffer start time: {self.start_seconds}")
        if self.n_samples and not np.all(np.isfinite(self.samples)):
            raise InputInvalidError("PCM buffer contains non-finite samples")
        if self.n_samples and float(np.max(np.abs(self.samples))) > 1.0 + _FULL_SCALE_TOLERANCE:
            raise InputInvalidError("PCM buffer is not normalized to [-1, 1]")
        return self


@dataclass
class FeatureBundle:
    """Per-frame summary of a PCM buffer."""
    frame_size: int
    hop_size: int
    sample_rate: float
    energy: np.ndarray
    zcr: np.ndarray
    spectral_centroid: np.ndarray
    mfcc: np.ndarray  # (n_mfcc, frame_count)
    onsets: np.ndarray  # strictly increasing frame indices
    start_seconds: float = 0.0
    centroid_source: str = "fft"

    @property
    def frame_count(self) -> int:
        return int(self.energy.shape[0])

    @property
    def frame_seconds(self) -> float:
        """Seconds between successive frames."""
        return self.hop_size / float(self.sample_rate) if self.sample_rate else 0.0

    @property
    def is_empty(self) -> bool:
        return self.frame_count < 2

    @classmethod
    def empty(cls, frame_size: int, hop_size: int, sample_rate: float,
              n_mfcc: int = 13, start_seconds: float = 0.0,
              centroid_source: str = "fft") -> "FeatureBundle":
        return cls(
            frame_size=frame_size,
            hop_size=hop_size,
            sample_rate=sample_rate,
            energy=np.zeros(0, dtype=np.float64),
            zcr=np.zeros(0, dtype=np.float64),
            spectral_centroid=np.zeros(0, dtype=np.float64),
            mfcc=np.zeros((n_mfcc, 0), dtype=np.float64),
            onsets=np.zeros(0, dtype=np.int64),
            start_seconds=start_seconds,
            centroid_source=centroid_source,
        )


@dataclass
class AlgorithmResult:
    """One estimator's opinion. ``confidence == 0`` means it abstained."""
    algorithm: str
    offset_seconds: float = 0.0
    confidence: float = 0.0
    computation_time: float = 0.0
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not math.isfinite(self.offset_seconds) or not math.isfinite(self.confidence):
            self.offset_seconds = 0.0
            self.confidence = 0.0
            self.reason = self.reason or "non_finite"
        self.confidence = float(min(max(self.confidence, 0.0), 1.0))
        self.offset_seconds = float(self.offset_seconds)

    @property
    def abstained(self) -> bool:
        return self.confidence <= 0.0

    @classmethod
    def abstain(cls, algorithm: str, reason: str, **details) -> "AlgorithmResult":
        return cls(algorithm=algorithm, offset_seconds=0.0, confidence=0.0,
                   reason=reason, details=dict(details))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "offset_seconds": self.offset_seconds,
            "confidence": self.confidence,
            "computation_time": self.computation_time,
            "reason": self.reason,
            "details": _jsonable(self.details),
        }


@dataclass(frozen=True)
class AnalysisWindow:
    """A ``(start, duration)`` range of one source, in seconds."""
    start_seconds: float
    duration_seconds: float

    @property
    def end_seconds(self) -> float:
        return self.start_seconds + self.duration_seconds

    def to_dict(self) -> Dict[str, float]:
        return {"start_seconds": self.start_seconds, "duration_seconds": self.duration_seconds}


@dataclass
class SyncResult:
    """The core's final answer for one pair of sources."""
    offset_seconds: float = 0.0
    confidence: float = 0.0
    status: SyncStatus = SyncStatus.ABSTAIN
    algorithm: str = "Hybrid"
    content: ContentLabel = ContentLabel.UNKNOWN
    window: Optional[AnalysisWindow] = None
    trace: List[AlgorithmResult] = field(default_factory=list)
    reason: Optional[str] = None
    min_confidence: float = 0.3
    computation_time: float = 0.0
    analysis_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        """Advisory accept/reject against ``min_confidence``; policy stays with callers."""
        return self.status == SyncStatus.OK and self.confidence >= self.min_confidence

    @property
    def confidence_tier(self) -> str:
        if self.confidence >= 0.8:
            return "high"
        if self.confidence >= 0.3:
            return "usable"
        if self.confidence > 0.0:
            return "low"
        return "none"

    def offset_samples(self, sample_rate: int) -> int:
        return int(round(self.offset_seconds * sample_rate))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset_seconds": self.offset_seconds,
            "offset_milliseconds": self.offset_seconds * 1000.0,
            "confidence": self.confidence,
            "confidence_tier": self.confidence_tier,
            "status": self.status.value,
            "accepted": self.accepted,
            "algorithm": self.algorithm,
            "content": self.content.value,
            "window": self.window.to_dict() if self.window else None,
            "reason": self.reason,
            "min_confidence": self.min_confidence,
            "computation_time": self.computation_time,
            "trace": [r.to_dict() for r in self.trace],
            "analysis_metadata": _jsonable(self.analysis_metadata),
        }


class SyncOptions(BaseModel):
    """Per-call options for ``synchronize``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    quality: SyncQuality = SyncQuality.STANDARD
    max_offset_seconds: float = Field(default_factory=lambda: settings.MAX_OFFSET, gt=0.0)
    min_confidence: float = Field(default_factory=lambda: settings.MIN_CONFIDENCE, ge=0.0, le=1.0)
    search_window: Optional[AnalysisWindow] = None
    search_range: Optional[AnalysisWindow] = None  # segment of b to search, default window +/- max offset
    cancellation: Optional[CancellationToken] = None
    deadline: Optional[float] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    sample_rate: int = Field(default_factory=lambda: settings.SAMPLE_RATE, gt=0)
    parallel: bool = False

    @field_validator("search_window", "search_range", mode="before")
    @classmethod
    def validate_search_window(cls, v, info):
        if v is None:
            return v
        if isinstance(v, (tuple, list)):
            if len(v) != 2:
                raise ValueError(f"{info.field_name} must be (start_seconds, duration_seconds)")
            v = AnalysisWindow(float(v[0]), float(v[1]))
        if not isinstance(v, AnalysisWindow):
            raise ValueError(f"{info.field_name} must be an AnalysisWindow or (start, duration) pair")
        if v.start_seconds < 0:
            raise ValueError(f"{info.field_name} start must be >= 0, got {v.start_seconds}")
        if v.duration_seconds <= 0:
            raise ValueError(f"{info.field_name} duration must be > 0, got {v.duration_seconds}")
        return v


def _jsonable(value):
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Enum):
        return value.value
    return value
