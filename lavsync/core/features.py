"""
Frame-level feature extraction.

Turns a PCM buffer into the energy envelope, zero-crossing rate, spectral
centroid, cepstral coefficients and onset list consumed by the estimators.
Frames are ``x[k*hop : k*hop + frame_size]`` with no centring, so a shift of
the input by a whole number of hops shifts every feature by the same number
of frames.
"""

import logging
import math
from typing import Optional

import librosa
import numpy as np

from ..config import settings
from .control import NEVER, Checkpoint
from .fft_plans import FFTPlanCache, plan_cache
from .types import FeatureBundle, PcmBuffer

logger = logging.getLogger(__name__)

# Frames per FFT block; the checkpoint is consulted between blocks
_FFT_BLOCK_FRAMES = 512

# Dynamic range of the onset envelope below its peak
_ONSET_RANGE_DB = 80.0


class FeatureExtractor:
    """
    Extracts a ``FeatureBundle`` from mono PCM.

    ``spectral_mode="zcr"`` skips the FFT entirely: the spectral centroid is
    replaced by the zero-crossing frequency and the cepstral track by a
    time-domain centroid. Both are lower fidelity and the bundle is tagged
    accordingly; the estimators only need the same function on both sides.
    """

    def __init__(self,
                 frame_size: Optional[int] = None,
                 hop_size: Optional[int] = None,
                 n_mfcc: Optional[int] = None,
                 n_mels: Optional[int] = None,
                 min_onset_gap: Optional[float] = None,
                 onset_history: Optional[float] = None,
                 onset_delta_db: Optional[float] = None,
                 onset_floor: Optional[float] = None,
                 spectral_mode: str = "fft",
                 plans: Optional[FFTPlanCache] = None):
        if spectral_mode not in ("fft", "zcr"):
            raise ValueError(f"Unknown spectral mode: {spectral_mode}")
        self.frame_size = frame_size or settings.FRAME_SIZE
        self.hop_size = hop_size or settings.HOP_SIZE
        self.n_mfcc = n_mfcc or settings.N_MFCC
        self.n_mels = n_mels or settings.N_MELS
        self.min_onset_gap = settings.MIN_ONSET_GAP if min_onset_gap is None else min_onset_gap
        self.onset_history = onset_history or settings.ONSET_HISTORY
        self.onset_delta_db = settings.ONSET_DELTA_DB if onset_delta_db is None else onset_delta_db
        self.onset_floor = settings.ONSET_FLOOR if onset_floor is None else onset_floor
        self.spectral_mode = spectral_mode
        self.plans = plans or plan_cache

        if self.hop_size > self.frame_size:
            raise ValueError(f"hop_size ({self.hop_size}) must not exceed frame_size ({self.frame_size})")

    def extract(self, pcm: PcmBuffer, checkpoint: Checkpoint = NEVER) -> FeatureBundle:
        """
        Extract all features from ``pcm``.

        Args:
            pcm: Mono buffer, already validated
            checkpoint: Consulted between FFT blocks

        Returns:
            FeatureBundle; empty when the buffer holds fewer than two frames
        """
        n_mfcc = self.n_mfcc if self.spectral_mode == "fft" else 1
        if pcm.n_samples < self.frame_size + self.hop_size:
            logger.debug(f"Buffer too short for two frames ({pcm.n_samples} samples)")
            return FeatureBundle.empty(self.frame_size, self.hop_size, pcm.sample_rate,
                                       n_mfcc=n_mfcc, start_seconds=pcm.start_seconds,
                                       centroid_source=self.spectral_mode)

        x = np.ascontiguousarray(pcm.samples, dtype=np.float64)
        frames = librosa.util.frame(x, frame_length=self.frame_size, hop_length=self.hop_size)

        energy = np.sqrt(np.mean(frames ** 2, axis=0))
        zcr = self.zero_crossing_rate(frames)

        if self.spectral_mode == "fft":
            centroid, mfcc = self._spectral_features(frames, pcm.sample_rate, checkpoint)
        else:
            centroid = zcr * pcm.sample_rate / 2.0
            mfcc = self._time_domain_centroid(frames)[np.newaxis, :]

        onsets = self.detect_onsets(energy, pcm.sample_rate)

        bundle = FeatureBundle(
            frame_size=self.frame_size,
            hop_size=self.hop_size,
            sample_rate=pcm.sample_rate,
            energy=energy,
            zcr=zcr,
            spectral_centroid=centroid,
            mfcc=mfcc,
            onsets=onsets,
            start_seconds=pcm.start_seconds,
            centroid_source=self.spectral_mode,
        )
        logger.debug(f"Extracted {bundle.frame_count} frames, {len(onsets)} onsets "
                     f"({self.spectral_mode} spectral features)")
        return bundle

    @staticmethod
    def zero_crossing_rate(frames: np.ndarray) -> np.ndarray:
        signs = np.signbit(frames)
        crossings = np.count_nonzero(signs[1:] != signs[:-1], axis=0)
        return crossings / float(frames.shape[0])

    def _spectral_features(self, frames: np.ndarray, sample_rate: float, checkpoint: Checkpoint):
        plan = self.plans.get(self.frame_size, sample_rate, self.n_mels)
        n_frames = frames.shape[1]
        centroid = np.zeros(n_frames, dtype=np.float64)
        mel = np.zeros((self.n_mels, n_frames), dtype=np.float64)

        for start in range(0, n_frames, _FFT_BLOCK_FRAMES):
            checkpoint.check()
            stop = min(start + _FFT_BLOCK_FRAMES, n_frames)
            block = frames[:, start:stop] * plan.window[:, np.newaxis]
            power = np.abs(np.fft.rfft(block, axis=0)) ** 2
            total = power.sum(axis=0)
            weighted = plan.frequencies @ power
            centroid[start:stop] = np.divide(weighted, total, out=np.zeros_like(total), where=total > 0)
            mel[:, start:stop] = plan.mel_basis @ power

        log_mel = librosa.power_to_db(mel, ref=1.0, amin=1e-10, top_db=None)
        mfcc = librosa.feature.mfcc(S=log_mel, n_mfcc=self.n_mfcc)
        return centroid, mfcc

    @staticmethod
    def _time_domain_centroid(frames: np.ndarray) -> np.ndarray:
        """Magnitude-weighted sample position within each frame."""
        magnitude = np.abs(frames)
        positions = np.arange(frames.shape[0], dtype=np.float64)
        total = magnitude.sum(axis=0)
        weighted = positions @ magnitude
        return np.divide(weighted, total, out=np.zeros_like(total), where=total > 0)

    def detect_onsets(self, energy: np.ndarray, sample_rate: float) -> np.ndarray:
        """
        Frame indices where the envelope jumps above its recent level.

        The envelope is taken to dB over an 80 dB range below its peak and
        handed to ``librosa.util.peak_pick``: an onset is a local maximum over
        +/-1 frame that stands ``onset_delta_db`` above the mean level of the
        preceding ``onset_history`` seconds, at least ``min_onset_gap``
        seconds after the previous onset. Frames quieter than ``onset_floor``
        of the peak count as silence. A steady envelope has no onsets however
        loud it is.
        """
        n = energy.shape[0]
        if n < 2:
            return np.zeros(0, dtype=np.int64)
        peak = float(np.max(energy))
        if peak <= 0.0:
            return np.zeros(0, dtype=np.int64)

        history = max(1, int(round(self.onset_history * sample_rate / self.hop_size)))
        min_gap = int(math.ceil(self.min_onset_gap * sample_rate / self.hop_size))

        level = librosa.amplitude_to_db(energy, ref=peak, amin=1e-10, top_db=_ONSET_RANGE_DB) + _ONSET_RANGE_DB
        level[energy < self.onset_floor * peak] = 0.0

        onsets = librosa.util.peak_pick(
            level,
            pre_max=1,
            post_max=2,
            pre_avg=history,
            post_avg=1,
            delta=self.onset_delta_db,
            wait=max(0, min_gap - 1),
        )
        return np.asarray(onsets, dtype=np.int64)
