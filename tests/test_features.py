import numpy as np
import pytest

from lavsync.core.control import CancellationToken, Checkpoint, Interrupted
from lavsync.core.features import FeatureExtractor
from lavsync.core.types import PcmBuffer

from .conftest import HOP, SR, make_percussive


def test_frame_count_and_array_lengths():
    x = make_percussive(3.0)
    bundle = FeatureExtractor().extract(PcmBuffer(x, SR))

    expected = 1 + (len(x) - 2048) // HOP
    assert bundle.frame_count == expected
    for arr in (bundle.zcr, bundle.spectral_centroid):
        assert arr.shape == (expected,)
    assert bundle.mfcc.shape == (13, expected)
    assert bundle.centroid_source == "fft"


def test_energy_of_constant_sine():
    t = np.arange(SR) / SR
    x = 0.5 * np.sin(2 * np.pi * 441.0 * t)
    bundle = FeatureExtractor().extract(PcmBuffer(x, SR))
    assert np.allclose(bundle.energy, 0.5 / np.sqrt(2), atol=0.01)


def test_centroid_tracks_tone_frequency():
    t = np.arange(SR) / SR
    x = 0.5 * np.sin(2 * np.pi * 1000.0 * t)
    bundle = FeatureExtractor().extract(PcmBuffer(x, SR))
    assert np.median(bundle.spectral_centroid) == pytest.approx(1000.0, rel=0.05)


def test_zero_power_frames_have_zero_centroid():
    bundle = FeatureExtractor().extract(PcmBuffer(np.zeros(SR), SR))
    assert np.all(bundle.spectral_centroid == 0.0)
    assert bundle.onsets.size == 0


def test_short_buffer_yields_empty_bundle():
    bundle = FeatureExtractor().extract(PcmBuffer(np.zeros(2048 + HOP - 1), SR))
    assert bundle.is_empty
    assert bundle.frame_count == 0
    assert bundle.mfcc.shape[1] == 0


def test_shift_by_whole_hops_shifts_features():
    x = make_percussive(4.0, seed=3)
    k = 10
    shifted = np.concatenate((np.zeros(k * HOP, dtype=np.float32), x))
    extractor = FeatureExtractor()
    a = extractor.extract(PcmBuffer(x, SR))
    b = extractor.extract(PcmBuffer(shifted, SR))

    n = a.frame_count
    assert np.allclose(b.energy[k:k + n], a.energy, atol=1e-6)
    assert np.allclose(b.spectral_centroid[k:k + n], a.spectral_centroid, rtol=1e-4, atol=1e-3)


def test_onsets_follow_bursts():
    n = 5 * SR
    x = np.zeros(n)
    tau = int(0.03 * SR)
    positions = [int((0.5 + i) * SR) for i in range(5)]
    for p in positions:
        k = np.arange(6 * tau)
        x[p:p + k.size] += 0.5 * np.exp(-k / tau) * np.sin(2 * np.pi * 800.0 * k / SR)

    bundle = FeatureExtractor().extract(PcmBuffer(x, SR))
    assert bundle.onsets.size == len(positions)
    assert np.all(np.diff(bundle.onsets) > 0)
    for onset, p in zip(bundle.onsets, positions):
        assert abs(onset - p // HOP) <= 1


def test_min_onset_gap_is_enforced():
    x = make_percussive(10.0, seed=5)
    extractor = FeatureExtractor(min_onset_gap=1.0)
    bundle = extractor.extract(PcmBuffer(x, SR))
    min_gap_frames = int(np.ceil(1.0 * SR / HOP))
    assert np.all(np.diff(bundle.onsets) >= min_gap_frames)


def test_steady_tone_has_no_onsets():
    t = np.arange(3 * 44100) / 44100
    x = 0.5 * np.sin(2 * np.pi * 1000.0 * t)
    bundle = FeatureExtractor().extract(PcmBuffer(x, 44100))
    assert bundle.onsets.size == 0


def test_tone_entry_is_an_onset_but_its_sustain_is_not():
    t = np.arange(2 * SR) / SR
    x = np.concatenate((np.zeros(SR), 0.5 * np.sin(2 * np.pi * 1000.0 * t)))
    bundle = FeatureExtractor().extract(PcmBuffer(x, SR))
    history = int(round(0.5 * SR / HOP))
    assert bundle.onsets.size >= 1
    assert abs(bundle.onsets[0] - SR // HOP) <= 6
    # Once the running mean has caught up with the tone nothing more fires
    assert np.all(bundle.onsets <= SR // HOP + history)


def test_zcr_mode_tags_bundle():
    x = make_percussive(3.0)
    bundle = FeatureExtractor(spectral_mode="zcr").extract(PcmBuffer(x, SR))
    assert bundle.centroid_source == "zcr"
    assert bundle.mfcc.shape == (1, bundle.frame_count)
    assert np.allclose(bundle.spectral_centroid, bundle.zcr * SR / 2)


def test_unknown_spectral_mode_rejected():
    with pytest.raises(ValueError):
        FeatureExtractor(spectral_mode="wavelet")


def test_cancelled_checkpoint_interrupts_extraction():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(Interrupted) as exc_info:
        FeatureExtractor().extract(PcmBuffer(make_percussive(3.0), SR), Checkpoint(token))
    assert exc_info.value.reason == "cancelled"
