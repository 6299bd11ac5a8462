import numpy as np
import pytest

from lavsync.core.algorithms import CrossCorrelationSync, DTWSync, OnsetSync, SpectralSync
from lavsync.core.algorithms.base import SyncAlgorithm
from lavsync.core.control import CancellationToken, Checkpoint
from lavsync.core.features import FeatureExtractor
from lavsync.core.types import AlgorithmResult, ContentLabel, FeatureBundle, PcmBuffer

from .conftest import FRAME, HOP, SR, make_percussive

K = 40  # shift in frames


def bundle_from(energy=None, mfcc=None, centroid=None, onsets=(), frames=None, start=0.0):
    frames = frames or len(energy if energy is not None else centroid if centroid is not None else mfcc[0])
    return FeatureBundle(
        frame_size=2048,
        hop_size=HOP,
        sample_rate=SR,
        energy=np.asarray(energy if energy is not None else np.ones(frames), dtype=float),
        zcr=np.zeros(frames),
        spectral_centroid=np.asarray(centroid if centroid is not None else np.zeros(frames), dtype=float),
        mfcc=np.asarray(mfcc if mfcc is not None else np.zeros((13, frames)), dtype=float),
        onsets=np.asarray(onsets, dtype=np.int64),
        start_seconds=start,
    )


def random_track(n, seed, smooth=5):
    rng = np.random.default_rng(seed)
    raw = rng.standard_normal(n + smooth)
    return np.convolve(raw, np.ones(smooth) / smooth, mode="valid")[:n]


def shifted_pair(n=400, k=K, seed=0):
    """Track ``b`` repeats ``a`` ``k`` frames later: b[j] = a[j - k]."""
    full = random_track(n + k, seed)
    return full[k:], full[:n]


@pytest.fixture(scope="module")
def shifted_bundles():
    x = make_percussive(10.0, seed=7)
    room_tone = 0.002 * np.random.default_rng(8).standard_normal(K * HOP).astype(np.float32)
    extractor = FeatureExtractor()
    a = extractor.extract(PcmBuffer(x, SR))
    b = extractor.extract(PcmBuffer(np.concatenate((room_tone, x))[:len(x)], SR))
    return a, b


class TestCrossCorrelation:
    def test_recovers_shift(self):
        ea, eb = shifted_pair()
        result = CrossCorrelationSync().run(bundle_from(energy=np.abs(ea)), bundle_from(energy=np.abs(eb)))
        assert result.offset_seconds == pytest.approx(K * FRAME, abs=0.5 * FRAME)
        assert result.confidence > 0.5
        assert result.details["method"] == "fft"

    def test_sign_flips_when_sources_swap(self):
        ea, eb = shifted_pair()
        xc = CrossCorrelationSync()
        forward = xc.run(bundle_from(energy=np.abs(ea)), bundle_from(energy=np.abs(eb)))
        backward = xc.run(bundle_from(energy=np.abs(eb)), bundle_from(energy=np.abs(ea)))
        assert forward.offset_seconds == pytest.approx(-backward.offset_seconds, abs=FRAME)

    def test_identity_peaks_at_zero_with_full_confidence(self):
        e = np.abs(random_track(300, 3))
        result = CrossCorrelationSync().run(bundle_from(energy=e), bundle_from(energy=e))
        assert result.offset_seconds == pytest.approx(0.0, abs=0.1 * FRAME)
        assert result.confidence == pytest.approx(1.0)

    def test_flat_envelope_abstains(self):
        flat = np.full(300, 0.1)
        result = CrossCorrelationSync().run(bundle_from(energy=flat), bundle_from(energy=flat))
        assert result.abstained
        assert result.reason == "flat_envelope"

    def test_peak_outside_search_range_abstains(self):
        ea, eb = shifted_pair()
        # Search only +/-10 frames while the true lag is 40
        result = CrossCorrelationSync(max_offset_seconds=10 * FRAME).run(
            bundle_from(energy=np.abs(ea)), bundle_from(energy=np.abs(eb)))
        assert result.abstained or abs(result.offset_seconds) <= 10 * FRAME

    def test_direct_path_matches_fft_path(self):
        ea, eb = shifted_pair()
        result = CrossCorrelationSync(use_fft=False).run(bundle_from(energy=np.abs(ea)), bundle_from(energy=np.abs(eb)))
        assert result.details["method"] == "direct"
        assert result.offset_seconds == pytest.approx(K * FRAME, abs=4 * FRAME)

    def test_constant_envelope_aligns_to_content_edge(self):
        level = np.full(300, 0.3)
        b = np.concatenate((np.zeros(50), np.full(300, 0.3)))
        result = CrossCorrelationSync().run(bundle_from(energy=level), bundle_from(energy=b))
        assert result.details["mean_removed"] is False
        assert result.offset_seconds == pytest.approx(50 * FRAME, abs=0.1 * FRAME)
        assert result.confidence == pytest.approx(1.0)

    def test_template_found_inside_longer_search_range(self):
        full = np.abs(random_track(800, 21))
        # b's bundle starts 25 frames into a source that runs 25 frames late
        a = bundle_from(energy=full[300:500], start=300 * FRAME)
        b = bundle_from(energy=full, start=25 * FRAME)
        result = CrossCorrelationSync().run(a, b)
        assert result.offset_seconds == pytest.approx(25 * FRAME, abs=0.5 * FRAME)
        assert result.confidence > 0.9

    def test_search_range_honours_min_overlap(self):
        ea, eb = shifted_pair()
        result = CrossCorrelationSync().run(bundle_from(energy=np.abs(ea)), bundle_from(energy=np.abs(eb)))
        assert result.details["searched_lags"] == 401


class TestDTW:
    def test_identity(self):
        mfcc = np.vstack([random_track(300, s) for s in range(13)])
        result = DTWSync().run(bundle_from(mfcc=mfcc), bundle_from(mfcc=mfcc))
        assert result.offset_seconds == pytest.approx(0.0, abs=1e-9)
        assert result.confidence > 0.9

    def test_recovers_shift(self):
        pairs = [shifted_pair(seed=s) for s in range(13)]
        a = np.vstack([p[0] for p in pairs])
        b = np.vstack([p[1] for p in pairs])
        result = DTWSync().run(bundle_from(mfcc=a), bundle_from(mfcc=b))
        assert result.offset_seconds == pytest.approx(K * FRAME, abs=2 * FRAME)
        assert result.confidence > 0.3
        assert [s["scale"] for s in result.details["scales"]] == [8, 4, 2, 1]

    def test_finds_reference_inside_longer_lavalier(self):
        full = np.vstack([random_track(800, s + 40) for s in range(13)])
        # A lag of 320 frames lands on the grid of every scale
        a = bundle_from(mfcc=full[:, 320:520], start=320 * FRAME)
        b = bundle_from(mfcc=full, start=25 * FRAME)
        result = DTWSync().run(a, b)
        assert result.offset_seconds == pytest.approx(25 * FRAME, abs=FRAME)
        assert result.confidence > 0.8

    def test_lag_beyond_max_offset_abstains(self):
        pairs = [shifted_pair(seed=s) for s in range(13)]
        a = np.vstack([p[0] for p in pairs])
        b = np.vstack([p[1] for p in pairs])
        result = DTWSync(max_offset_seconds=10 * FRAME).run(bundle_from(mfcc=a), bundle_from(mfcc=b))
        assert result.abstained
        assert result.reason == "no_valid_scale"
        assert all(s.get("skipped") == "out_of_range" for s in result.details["scales"])

    def test_flat_features_abstain(self):
        flat = np.ones((13, 200))
        result = DTWSync().run(bundle_from(mfcc=flat), bundle_from(mfcc=flat))
        assert result.abstained
        assert result.reason == "flat_features"

    def test_lavalier_shorter_than_reference_abstains(self):
        a = np.vstack([random_track(300, s) for s in range(13)])
        b = np.vstack([random_track(60, s + 20) for s in range(13)])
        result = DTWSync(scales=(1,)).run(bundle_from(mfcc=a), bundle_from(mfcc=b))
        assert result.abstained
        assert result.reason == "no_valid_scale"

    def test_cancellation_between_scales(self):
        token = CancellationToken()
        token.cancel()
        mfcc = np.vstack([random_track(200, s) for s in range(13)])
        result = DTWSync().run(bundle_from(mfcc=mfcc), bundle_from(mfcc=mfcc), Checkpoint(token))
        assert result.abstained
        assert result.reason == "cancelled"

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            DTWSync(scales=(0,))
        with pytest.raises(ValueError):
            DTWSync(slope=0.5)


class TestOnset:
    ONSETS = np.array([10, 30, 55, 80, 120, 150, 190, 230])

    def test_recovers_shift(self):
        a = bundle_from(onsets=self.ONSETS, frames=400)
        b = bundle_from(onsets=self.ONSETS + 20, frames=400)
        result = OnsetSync().run(a, b)
        assert result.offset_seconds == pytest.approx(20 * FRAME)
        assert result.confidence == pytest.approx(min(1.0, len(self.ONSETS) / 10.0))
        assert result.details["matched"] == len(self.ONSETS)

    def test_negative_shift(self):
        a = bundle_from(onsets=self.ONSETS + 20, frames=400)
        b = bundle_from(onsets=self.ONSETS, frames=400)
        assert OnsetSync().run(a, b).offset_seconds == pytest.approx(-20 * FRAME)

    def test_too_few_onsets_abstain(self):
        a = bundle_from(onsets=[10, 40], frames=200)
        b = bundle_from(onsets=[10, 40, 90], frames=200)
        result = OnsetSync().run(a, b)
        assert result.abstained
        assert result.reason == "too_few_onsets"

    def test_partial_overlap_scales_confidence(self):
        a = bundle_from(onsets=self.ONSETS, frames=400)
        # Only the first half of a's onsets appear in b
        b = bundle_from(onsets=np.concatenate((self.ONSETS[:4] + 20, [300, 333, 370, 390])), frames=400)
        result = OnsetSync().run(a, b)
        assert result.offset_seconds == pytest.approx(20 * FRAME)
        assert result.confidence == pytest.approx(0.8 * 4 / 8)

    def test_onsets_outside_overlap_do_not_count(self):
        a_onsets = np.concatenate((self.ONSETS, [260, 300, 340, 380]))
        shifted = a_onsets + 150
        a = bundle_from(onsets=a_onsets, frames=400)
        b = bundle_from(onsets=shifted[shifted < 400], frames=400)
        result = OnsetSync().run(a, b)
        assert result.offset_seconds == pytest.approx(150 * FRAME)
        # a's last four onsets fall past the end of b at this lag
        assert result.confidence == pytest.approx(0.8)


class TestSpectral:
    def test_recovers_shift(self):
        ca, cb = shifted_pair(seed=11)
        result = SpectralSync().run(bundle_from(centroid=1000 + 200 * ca), bundle_from(centroid=1000 + 200 * cb))
        assert result.offset_seconds == pytest.approx(K * FRAME)
        assert result.confidence > 0.8

    def test_flat_centroid_abstains(self):
        flat = np.full(300, 1500.0)
        result = SpectralSync().run(bundle_from(centroid=flat), bundle_from(centroid=flat))
        assert result.abstained
        assert result.reason == "flat_centroid"

    def test_template_found_inside_longer_search_range(self):
        full = 1000 + 200 * random_track(800, 31)
        a = bundle_from(centroid=full[300:500], start=300 * FRAME)
        b = bundle_from(centroid=full, start=25 * FRAME)
        result = SpectralSync().run(a, b)
        assert result.offset_seconds == pytest.approx(25 * FRAME)
        assert result.confidence == pytest.approx(1.0)


def test_features_from_real_audio_agree(shifted_bundles):
    a, b = shifted_bundles
    for algorithm in (CrossCorrelationSync(), DTWSync(), OnsetSync(), SpectralSync()):
        result = algorithm.run(a, b)
        assert not result.abstained, algorithm.name
        assert result.offset_seconds == pytest.approx(K * FRAME, abs=2 * FRAME), algorithm.name


def test_empty_bundles_abstain():
    empty = FeatureBundle.empty(2048, HOP, SR)
    for algorithm in (CrossCorrelationSync(), DTWSync(), OnsetSync(), SpectralSync()):
        result = algorithm.run(empty, empty)
        assert result.abstained
        assert result.reason == "empty_features"


class _Fixed(SyncAlgorithm):
    name = "Fixed"

    def __init__(self, confidence=0.0, error=None, **kwargs):
        super().__init__(**kwargs)
        self.confidence = confidence
        self.error = error

    def _estimate(self, features_a, features_b, checkpoint):
        if self.error is not None:
            raise self.error
        return AlgorithmResult(self.name, offset_seconds=1.0, confidence=self.confidence)


class TestBase:
    def setup_method(self):
        self.bundle = bundle_from(energy=np.ones(10))

    def test_below_floor_is_zeroed(self):
        result = _Fixed(confidence=0.1).run(self.bundle, self.bundle)
        assert result.confidence == 0.0
        assert result.reason == "below_floor"
        assert result.details["raw_confidence"] == pytest.approx(0.1)

    def test_above_floor_kept(self):
        result = _Fixed(confidence=0.5).run(self.bundle, self.bundle)
        assert result.confidence == pytest.approx(0.5)
        assert result.computation_time >= 0.0

    def test_numerical_errors_become_abstain(self):
        result = _Fixed(error=np.linalg.LinAlgError("singular")).run(self.bundle, self.bundle)
        assert result.abstained
        assert result.reason == "numerical_failure"

    def test_expired_deadline_abstains_with_timeout(self):
        result = _Fixed(confidence=0.9).run(self.bundle, self.bundle, Checkpoint(deadline=0.0))
        assert result.abstained
        assert result.reason == "timeout"

    def test_expected_accuracy_priors(self):
        assert OnsetSync().expected_accuracy(ContentLabel.MUSIC) == pytest.approx(0.95)
        assert DTWSync().expected_accuracy(ContentLabel.SPEECH) == pytest.approx(0.90)
        assert _Fixed().expected_accuracy(ContentLabel.SPEECH) == pytest.approx(0.5)
