"""
Shared FFT analysis plans.

A plan bundles everything about a frame transform that depends only on its
size and sample rate: the analysis window, bin frequencies and the mel
filterbank. Plans are immutable once built, so they are shared by reference
across calls and threads; only their construction is serialized.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Tuple

import librosa
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FFTPlan:
    n_fft: int
    sample_rate: float
    n_mels: int
    window: np.ndarray
    frequencies: np.ndarray
    mel_basis: np.ndarray


class FFTPlanCache:
    """Lazily builds and memoizes ``FFTPlan`` objects."""

    def __init__(self):
        self._plans: Dict[Tuple[int, float, int], FFTPlan] = {}
        self._lock = threading.Lock()

    def get(self, n_fft: int, sample_rate: float, n_mels: int) -> FFTPlan:
        key = (int(n_fft), float(sample_rate), int(n_mels))
        plan = self._plans.get(key)
        if plan is not None:
            return plan
        with self._lock:
            plan = self._plans.get(key)
            if plan is None:
                plan = self._build(*key)
                self._plans[key] = plan
        return plan

    def __len__(self):
        return len(self._plans)

    @staticmethod
    def _build(n_fft: int, sample_rate: float, n_mels: int) -> FFTPlan:
        logger.debug(f"Building FFT plan n_fft={n_fft} sr={sample_rate} n_mels={n_mels}")
        window = librosa.filters.get_window("hann", n_fft, fftbins=True).astype(np.float64)
        frequencies = np.fft.rfftfreq(n_fft, d=1.0 / sample_rate)
        mel_basis = librosa.filters.mel(sr=sample_rate, n_fft=n_fft, n_mels=n_mels)
        for arr in (window, frequencies, mel_basis):
            arr.setflags(write=False)
        return FFTPlan(n_fft, sample_rate, n_mels, window, frequencies, mel_basis)


def next_power_of_two(n: int) -> int:
    size = 1
    while size < n:
        size <<= 1
    return size


plan_cache = FFTPlanCache()
