import numpy as np
import pytest
from scipy import signal

from lavsync.core.decoder import ArrayDecoder
from lavsync.core.types import SyncOptions

SR = 22050
HOP = 512
FRAME = HOP / SR


def make_percussive(duration, sr=SR, seed=0):
    """Decaying tone bursts 0.3-0.7 s apart over a faint noise floor."""
    rng = np.random.default_rng(seed)
    n = int(duration * sr)
    x = 0.002 * rng.standard_normal(n)
    tau = int(0.03 * sr)
    length = 6 * tau
    t = 0.2 + rng.uniform(0.0, 0.1)
    while t < duration - 0.1:
        p = int(t * sr)
        k = np.arange(min(length, n - p))
        freq = rng.uniform(200.0, 2000.0)
        amp = rng.uniform(0.3, 0.6)
        x[p:p + k.size] += amp * np.exp(-k / tau) * np.sin(2 * np.pi * freq * k / sr)
        t += rng.uniform(0.3, 0.7)
    return x.astype(np.float32)


def make_speech_like(duration, sr=SR, seed=0):
    """Noise-band syllables of random length, level and band, grouped into phrases."""
    rng = np.random.default_rng(seed)
    n = int(duration * sr)
    x = 0.001 * rng.standard_normal(n)
    t = rng.uniform(0.1, 0.4)
    while t < duration - 0.1:
        for _ in range(int(rng.integers(3, 9))):
            p = int(t * sr)
            length = int(rng.uniform(0.08, 0.3) * sr)
            if p + length > n:
                break
            low = rng.uniform(200.0, 700.0)
            sos = signal.butter(4, [low, low * rng.uniform(3.0, 6.0)], btype="band", fs=sr, output="sos")
            burst = signal.sosfilt(sos, rng.standard_normal(length))
            x[p:p + length] += rng.uniform(0.3, 1.0) * np.hanning(length) * burst / np.max(np.abs(burst))
            t += length / sr + rng.uniform(0.04, 0.2)
        t += rng.uniform(0.3, 0.9)
    x = 0.5 * x / np.max(np.abs(x))
    return x.astype(np.float32)


def make_tone(duration, freq=1000.0, sr=SR, amplitude=0.5):
    t = np.arange(int(round(duration * sr))) / sr
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def advanced(x, shift_samples):
    """``x`` with its first ``shift_samples`` dropped: events happen earlier."""
    return x[shift_samples:]


def delayed(x, shift_samples):
    """``x`` preceded by ``shift_samples`` of silence: events happen later."""
    return np.concatenate((np.zeros(shift_samples, dtype=np.float32), x))


@pytest.fixture
def percussive():
    return make_percussive(30.0, seed=1)


@pytest.fixture
def decoder():
    return ArrayDecoder()


@pytest.fixture
def opts():
    return SyncOptions(sample_rate=SR)
