import numpy as np
import pytest
import soundfile as sf

from lavsync.core.control import CancellationToken, Checkpoint
from lavsync.core.decoder import ArrayDecoder, LibrosaDecoder
from lavsync.exceptions import (
    DecodeCancelledError,
    DecodeNotFoundError,
    OutOfRangeError,
    UnsupportedFormatError,
)

from .conftest import SR, make_percussive


@pytest.fixture
def wav_file(tmp_path):
    path = tmp_path / "lav.wav"
    sf.write(str(path), make_percussive(4.0, seed=3), SR, subtype="FLOAT")
    return path


class TestArrayDecoder:
    def test_slices_requested_range(self):
        x = np.arange(SR * 4, dtype=np.float32) / (SR * 4)
        decoder = ArrayDecoder({"a": (x, SR)})
        pcm = decoder.decode("a", 1.0, 2.0, SR)
        assert pcm.sample_rate == SR
        assert pcm.start_seconds == 1.0
        assert pcm.n_samples == 2 * SR
        assert pcm.samples[0] == pytest.approx(x[SR])

    def test_duration(self):
        decoder = ArrayDecoder({"a": (np.zeros(SR * 3), SR)})
        assert decoder.duration("a") == pytest.approx(3.0)

    def test_multichannel_is_downmixed(self):
        stereo = np.vstack([np.full(SR, 0.2), np.full(SR, 0.4)])
        decoder = ArrayDecoder()
        decoder.add("st", stereo, SR)
        assert decoder.decode("st", 0.0, 1.0, SR).samples == pytest.approx(np.full(SR, 0.3))

    def test_resamples(self):
        decoder = ArrayDecoder({"a": (make_percussive(2.0, sr=44100), 44100)})
        pcm = decoder.decode("a", 0.0, 2.0, SR)
        assert pcm.sample_rate == SR
        assert abs(pcm.n_samples - 2 * SR) <= 1
        assert np.max(np.abs(pcm.samples)) <= 1.0

    def test_unclipped_without_resampling(self):
        # Out-of-scale samples must reach validation untouched
        decoder = ArrayDecoder({"a": (np.full(SR, 2.0), SR)})
        assert np.max(decoder.decode("a", 0.0, 1.0, SR).samples) == pytest.approx(2.0)

    def test_missing_key(self):
        with pytest.raises(DecodeNotFoundError) as exc_info:
            ArrayDecoder().duration("nope")
        assert exc_info.value.error_code == "DECODE_NOT_FOUND"

    @pytest.mark.parametrize("start,duration", [(-1.0, 1.0), (2.5, 1.0), (0.0, 0.0)])
    def test_out_of_range(self, start, duration):
        decoder = ArrayDecoder({"a": (np.zeros(SR * 3), SR)})
        with pytest.raises(OutOfRangeError):
            decoder.decode("a", start, duration, SR)

    def test_rounded_container_duration_tolerated(self):
        decoder = ArrayDecoder({"a": (np.zeros(SR * 3 - 10), SR)})
        assert decoder.decode("a", 0.0, 3.0, SR).n_samples == SR * 3 - 10

    def test_stereo_output_unsupported(self):
        decoder = ArrayDecoder({"a": (np.zeros(SR), SR)})
        with pytest.raises(UnsupportedFormatError):
            decoder.decode("a", 0.0, 1.0, SR, channels=2)

    def test_cancelled_before_decode(self):
        token = CancellationToken()
        token.cancel()
        decoder = ArrayDecoder({"a": (np.zeros(SR), SR)})
        with pytest.raises(DecodeCancelledError):
            decoder.decode("a", 0.0, 1.0, SR, checkpoint=Checkpoint(token))


class TestLibrosaDecoder:
    def test_duration_from_header(self, wav_file):
        assert LibrosaDecoder().duration(wav_file) == pytest.approx(4.0)

    def test_decodes_range(self, wav_file):
        pcm = LibrosaDecoder().decode(wav_file, 1.0, 2.0, SR)
        assert pcm.sample_rate == SR
        assert pcm.start_seconds == 1.0
        assert abs(pcm.n_samples - 2 * SR) <= 1
        expected, _ = sf.read(str(wav_file), dtype="float32")
        assert pcm.samples[:100] == pytest.approx(expected[SR:SR + 100], abs=1e-6)

    def test_resamples_to_requested_rate(self, wav_file):
        pcm = LibrosaDecoder().decode(wav_file, 0.0, 4.0, 16000)
        assert pcm.sample_rate == 16000
        assert abs(pcm.n_samples - 4 * 16000) <= 1
        pcm.validate(16000)

    def test_missing_file(self, tmp_path):
        with pytest.raises(DecodeNotFoundError):
            LibrosaDecoder().duration(tmp_path / "missing.wav")

    def test_range_past_end(self, wav_file):
        with pytest.raises(OutOfRangeError):
            LibrosaDecoder().decode(wav_file, 3.0, 2.0, SR)

    def test_garbage_file_is_unsupported(self, tmp_path):
        path = tmp_path / "junk.wav"
        path.write_bytes(b"not audio at all")
        with pytest.raises(UnsupportedFormatError):
            LibrosaDecoder().duration(path)
