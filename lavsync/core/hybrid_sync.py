"""
Hybrid synchronization engine.

Runs one ``synchronize`` call end to end: window selection, decoding,
feature extraction, content classification, the four estimators and fusion.
Failures along the way become a status on the returned ``SyncResult``
rather than exceptions.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import settings
from ..exceptions import DecodeCancelledError, DecodeError, InputInvalidError
from .algorithms import CrossCorrelationSync, DTWSync, OnsetSync, SpectralSync, SyncAlgorithm
from .algorithms.dtw import DEFAULT_SCALES
from .classifier import classify_content, describe_content
from .control import CANCELLED, TIMEOUT, Checkpoint, Interrupted
from .decoder import Decoder, LibrosaDecoder, MediaRef
from .features import FeatureExtractor
from .fusion import fuse_results
from .types import (
    AlgorithmResult,
    AnalysisWindow,
    ContentLabel,
    FeatureBundle,
    SyncOptions,
    SyncQuality,
    SyncResult,
    SyncStatus,
)
from .window import select_analysis_window, select_search_range

logger = logging.getLogger(__name__)

_REAL_TIME_SCALES = (8, 4)

_INTERRUPT_STATUS = {
    CANCELLED: SyncStatus.CANCELLED,
    TIMEOUT: SyncStatus.TIMEOUT,
}


class HybridSyncEngine:
    """
    Orchestrates the estimators for one pair of sources.

    The engine holds no per-call state; one instance can serve concurrent
    calls from several threads.
    """

    def __init__(self, decoder: Optional[Decoder] = None):
        self.decoder = decoder or LibrosaDecoder()

    def build_extractor(self, quality: SyncQuality) -> FeatureExtractor:
        spectral_mode = "zcr" if quality == SyncQuality.REAL_TIME else "fft"
        return FeatureExtractor(spectral_mode=spectral_mode)

    def build_algorithms(self, opts: SyncOptions) -> List[SyncAlgorithm]:
        """Algorithm set for ``opts``, in the fixed order used for fusion."""
        quality = opts.quality
        scales = _REAL_TIME_SCALES if quality == SyncQuality.REAL_TIME else DEFAULT_SCALES
        padding = 2 if quality == SyncQuality.HIGH_QUALITY else 1
        return [
            CrossCorrelationSync(max_offset_seconds=opts.max_offset_seconds, padding_factor=padding),
            DTWSync(max_offset_seconds=opts.max_offset_seconds, scales=scales),
            OnsetSync(max_offset_seconds=opts.max_offset_seconds),
            SpectralSync(max_offset_seconds=opts.max_offset_seconds),
        ]

    def synchronize(self, a: MediaRef, b: MediaRef, opts: Optional[SyncOptions] = None) -> SyncResult:
        """
        Estimate how much later events occur in ``b`` than in ``a``.

        Args:
            a: Reference source (camera audio)
            b: Source to align (lavalier)
            opts: Per-call options; defaults come from settings

        Returns:
            SyncResult whose ``status`` says whether an offset was found
        """
        opts = opts or SyncOptions()
        started = time.perf_counter()
        checkpoint = Checkpoint.from_options(opts.cancellation, opts.deadline, opts.timeout_seconds)
        logger.info(f"Starting sync analysis: {_name(a)} vs {_name(b)} ({opts.quality.value})")

        try:
            duration_a = self.decoder.duration(a)
            duration_b = self.decoder.duration(b)
            window = select_analysis_window(duration_a, duration_b, opts.search_window)
            frame_seconds = settings.HOP_SIZE / float(opts.sample_rate)
            search_range = select_search_range(window, duration_b, opts.max_offset_seconds,
                                               frame_seconds, opts.search_range)
        except InputInvalidError as e:
            return self._terminal(SyncStatus.INPUT_INVALID, e.detail, opts, started)
        except DecodeError as e:
            return self._terminal(SyncStatus.DECODE_FAILED, e.detail, opts, started,
                                  metadata={"error_code": e.error_code})

        metadata: Dict[str, Any] = {
            "duration_a": duration_a,
            "duration_b": duration_b,
            "quality": opts.quality.value,
            "sample_rate": opts.sample_rate,
            "search_range": search_range.to_dict(),
        }

        if window.duration_seconds < settings.MIN_ANALYSIS_SECONDS:
            return self._terminal(SyncStatus.ABSTAIN, "window_too_short", opts, started,
                                  window=window, metadata=metadata)

        try:
            pcm_a = self.decoder.decode(a, window.start_seconds, window.duration_seconds,
                                        opts.sample_rate, checkpoint=checkpoint).validate(opts.sample_rate)
            pcm_b = self.decoder.decode(b, search_range.start_seconds, search_range.duration_seconds,
                                        opts.sample_rate, checkpoint=checkpoint).validate(opts.sample_rate)
        except InputInvalidError as e:
            return self._terminal(SyncStatus.INPUT_INVALID, e.detail, opts, started,
                                  window=window, metadata=metadata)
        except DecodeCancelledError as e:
            status = _INTERRUPT_STATUS.get(checkpoint.interrupted(), SyncStatus.CANCELLED)
            return self._terminal(status, e.detail, opts, started, window=window, metadata=metadata)
        except DecodeError as e:
            metadata["error_code"] = e.error_code
            return self._terminal(SyncStatus.DECODE_FAILED, e.detail, opts, started,
                                  window=window, metadata=metadata)

        extractor = self.build_extractor(opts.quality)
        try:
            features_a = extractor.extract(pcm_a, checkpoint)
            features_b = extractor.extract(pcm_b, checkpoint)
            checkpoint.check()
        except Interrupted as e:
            return self._terminal(_INTERRUPT_STATUS[e.reason], e.reason, opts, started,
                                  window=window, metadata=metadata)

        content = classify_content(features_a)
        content_b = classify_content(features_b)
        metadata.update({
            "content_b": content_b.value,
            "content_stats": describe_content(features_a),
            "frames": features_a.frame_count,
            "centroid_source": features_a.centroid_source,
        })
        logger.info(f"Content: {content.value} (b: {content_b.value}), "
                    f"window {window.start_seconds:.2f}s + {window.duration_seconds:.2f}s")

        algorithms = self.build_algorithms(opts)
        trace = self._run_algorithms(algorithms, features_a, features_b, checkpoint, opts.parallel)
        metadata["timings"] = {r.algorithm: r.computation_time for r in trace}
        metadata["expected_accuracy"] = {alg.name: alg.expected_accuracy(content) for alg in algorithms}

        reason = checkpoint.interrupted()
        if reason is not None:
            return self._terminal(_INTERRUPT_STATUS[reason], reason, opts, started, window=window,
                                  content=content, trace=trace, metadata=metadata)

        fused = fuse_results(trace, content, features_a, features_b, window,
                             duration_a, duration_b, max_offset_seconds=opts.max_offset_seconds)
        metadata["fusion"] = fused.details

        result = SyncResult(
            offset_seconds=fused.offset_seconds,
            confidence=fused.confidence,
            status=SyncStatus.ABSTAIN if fused.abstained else SyncStatus.OK,
            content=content,
            window=window,
            trace=trace,
            reason=fused.reason,
            min_confidence=opts.min_confidence,
            computation_time=time.perf_counter() - started,
            analysis_metadata=metadata,
        )
        logger.info(f"Sync analysis complete: offset={result.offset_seconds:+.4f}s "
                    f"confidence={result.confidence:.3f} status={result.status.value}")
        return result

    def _run_algorithms(self, algorithms: List[SyncAlgorithm], features_a: FeatureBundle,
                        features_b: FeatureBundle, checkpoint: Checkpoint,
                        parallel: bool) -> List[AlgorithmResult]:
        if not parallel:
            return [alg.run(features_a, features_b, checkpoint) for alg in algorithms]

        with ThreadPoolExecutor(max_workers=len(algorithms), thread_name_prefix="lavsync") as pool:
            futures = [pool.submit(alg.run, features_a, features_b, checkpoint) for alg in algorithms]
            # Joined in submission order so fusion sees the sequential ordering
            return [future.result() for future in futures]

    def _terminal(self, status: SyncStatus, reason: str, opts: SyncOptions, started: float,
                  window: Optional[AnalysisWindow] = None,
                  content: ContentLabel = ContentLabel.UNKNOWN,
                  trace: Optional[List[AlgorithmResult]] = None,
                  metadata: Optional[Dict[str, Any]] = None) -> SyncResult:
        if status in (SyncStatus.INPUT_INVALID, SyncStatus.DECODE_FAILED):
            logger.error(f"Sync analysis failed ({status.value}): {reason}")
        else:
            logger.info(f"Sync analysis stopped ({status.value}): {reason}")
        return SyncResult(
            status=status,
            content=content,
            window=window,
            trace=trace or [],
            reason=reason,
            min_confidence=opts.min_confidence,
            computation_time=time.perf_counter() - started,
            analysis_metadata=metadata or {},
        )


def _name(ref: MediaRef) -> str:
    return Path(str(ref)).name
