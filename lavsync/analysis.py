import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import settings
from .core.classifier import classify_content
from .core.control import NEVER
from .core.decoder import Decoder, LibrosaDecoder, MediaRef
from .core.hybrid_sync import HybridSyncEngine
from .core.types import ContentLabel, FeatureBundle, SyncOptions, SyncQuality, SyncResult, SyncStatus
from .exceptions import InputInvalidError


def synchronize(
    a: MediaRef,
    b: MediaRef,
    opts: Optional[SyncOptions] = None,
    decoder: Optional[Decoder] = None,
) -> SyncResult:
    """Estimate the offset of ``b`` relative to ``a``.

    Parameters
    ----------
    a, b:
        Media references understood by ``decoder``; ``a`` is the reference
        (camera audio), ``b`` the source being aligned (lavalier).
    opts:
        Per-call options. Defaults come from ``lavsync.config.settings``.
    decoder:
        Decoder collaborator, ``LibrosaDecoder`` by default.

    Returns
    -------
    SyncResult
        Positive ``offset_seconds`` means events happen later in ``b``.
        Failures are reported through ``status``, never raised.
    """
    return HybridSyncEngine(decoder).synchronize(a, b, opts)


def extract_features(
    a: MediaRef,
    start: float,
    dur: float,
    decoder: Optional[Decoder] = None,
    sample_rate: Optional[int] = None,
    quality: SyncQuality = SyncQuality.STANDARD,
) -> FeatureBundle:
    """Decode ``dur`` seconds of ``a`` from ``start`` and extract its features.

    Raises ``InputInvalidError`` for a negative start, a non-positive
    duration or malformed PCM, and ``DecodeError`` when the range cannot be
    decoded.
    """
    if not math.isfinite(start) or start < 0:
        raise InputInvalidError(f"Invalid start time: {start}", context={"start": start})
    if not math.isfinite(dur) or dur <= 0:
        raise InputInvalidError(f"Duration must be positive, got {dur}", context={"duration": dur})
    decoder = decoder or LibrosaDecoder()
    sample_rate = sample_rate or settings.SAMPLE_RATE
    pcm = decoder.decode(a, start, dur, sample_rate, checkpoint=NEVER).validate(sample_rate)
    engine = HybridSyncEngine(decoder)
    return engine.build_extractor(quality).extract(pcm)


def classify(features: FeatureBundle) -> ContentLabel:
    """Label the dominant acoustic class of ``features``."""
    return classify_content(features)


@dataclass
class LavalierSync:
    """Offsets for a lavalier recording with an optional safety track."""

    high_gain: SyncResult
    safety_path: Optional[str] = None
    safety_check: Optional[SyncResult] = None

    @property
    def offset_seconds(self) -> float:
        return self.high_gain.offset_seconds

    @property
    def safety_offset_seconds(self) -> Optional[float]:
        """The safety track is written by the same recorder, so it shares the offset."""
        if self.safety_path is None or self.high_gain.status != SyncStatus.OK:
            return None
        return self.high_gain.offset_seconds

    @property
    def safety_consistent(self) -> Optional[bool]:
        if self.safety_check is None:
            return None
        return (self.safety_check.status == SyncStatus.OK
                and abs(self.safety_check.offset_seconds) <= settings.AGREEMENT_TOLERANCE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset_seconds": self.offset_seconds,
            "high_gain": self.high_gain.to_dict(),
            "safety_path": self.safety_path,
            "safety_offset_seconds": self.safety_offset_seconds,
            "safety_consistent": self.safety_consistent,
            "safety_check": self.safety_check.to_dict() if self.safety_check else None,
        }


def synchronize_lavalier(
    video: MediaRef,
    high_gain: MediaRef,
    safety: Optional[MediaRef] = None,
    opts: Optional[SyncOptions] = None,
    decoder: Optional[Decoder] = None,
    cross_check: bool = False,
) -> LavalierSync:
    """Sync a lavalier recording against the camera audio.

    Only the high-gain track is analyzed against ``video``; the -6 dB safety
    track inherits its offset. With ``cross_check`` the safety track is also
    synchronized against the high-gain track, which should give ~0 s.
    """
    engine = HybridSyncEngine(decoder)
    result = engine.synchronize(video, high_gain, opts)

    check = None
    if safety is not None and cross_check:
        # Both tracks share one clock, so a search range placed in camera time does not apply
        check_opts = opts.model_copy(update={"search_range": None}) if opts is not None else None
        check = engine.synchronize(high_gain, safety, check_opts)

    return LavalierSync(
        high_gain=result,
        safety_path=str(safety) if safety is not None else None,
        safety_check=check,
    )
