"""
Decoder contract and adapters.

The sync core never opens containers itself. A decoder turns a media
reference into a mono ``PcmBuffer`` at the requested rate for a requested
time range, and reports the full duration of the media.
"""

import json
import logging
import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, Union

import librosa
import numpy as np
import soundfile as sf

from ..config import settings
from ..exceptions import (
    DecodeCancelledError,
    DecodeError,
    DecodeInternalError,
    DecodeNotFoundError,
    OutOfRangeError,
    UnsupportedFormatError,
)
from .control import NEVER, Checkpoint
from .types import PcmBuffer

logger = logging.getLogger(__name__)

MediaRef = Union[str, Path]

# Container durations are rounded; requests this far past the end still decode
_RANGE_TOLERANCE = 0.05


class Decoder(Protocol):
    """What the core needs from a media decoder."""

    def duration(self, path: MediaRef) -> float:
        ...

    def decode(self, path: MediaRef, start_seconds: float, duration_seconds: float,
               sample_rate: int, channels: int = 1, checkpoint: Checkpoint = NEVER) -> PcmBuffer:
        ...


def _check_range(path: MediaRef, start: float, duration: float, media_duration: float) -> None:
    if start < 0 or duration <= 0 or start + duration > media_duration + _RANGE_TOLERANCE:
        raise OutOfRangeError(str(path), start, duration, media_duration)


def _to_pcm(samples: np.ndarray, sample_rate: int, start_seconds: float, clip: bool = True) -> PcmBuffer:
    samples = np.asarray(samples, dtype=np.float32)
    if clip:
        # Resampling may overshoot full scale by a hair
        samples = np.clip(samples, -1.0, 1.0)
    return PcmBuffer(samples=samples, sample_rate=int(sample_rate), start_seconds=start_seconds)


class LibrosaDecoder:
    """Decodes audio files with ``librosa.load`` (soundfile backend)."""

    def duration(self, path: MediaRef) -> float:
        path = str(path)
        if not os.path.exists(path):
            raise DecodeNotFoundError(path)
        try:
            return float(sf.info(path).duration)
        except RuntimeError:
            logger.debug(f"soundfile cannot read {path}, asking librosa for the duration")
        try:
            return float(librosa.get_duration(path=path))
        except Exception as e:
            raise UnsupportedFormatError(f"Cannot read duration of {path}: {e}", path=path) from e

    def decode(self, path: MediaRef, start_seconds: float, duration_seconds: float,
               sample_rate: int, channels: int = 1, checkpoint: Checkpoint = NEVER) -> PcmBuffer:
        path = str(path)
        if channels != 1:
            raise UnsupportedFormatError(f"Only mono decoding is supported, got channels={channels}", path=path)
        if checkpoint.interrupted():
            raise DecodeCancelledError(f"Decode of {path} interrupted before start", path=path)

        _check_range(path, start_seconds, duration_seconds, self.duration(path))
        try:
            audio, sr = librosa.load(
                path,
                sr=sample_rate,
                mono=True,
                offset=start_seconds,
                duration=duration_seconds,
                dtype=np.float32,
            )
        except DecodeError:
            raise
        except (RuntimeError, EOFError) as e:
            raise UnsupportedFormatError(f"Cannot decode {path}: {e}", path=path) from e
        except Exception as e:
            raise DecodeInternalError(f"Decoding {path} failed: {e}", path=path) from e

        logger.debug(f"Decoded {Path(path).name}: {len(audio) / sr:.2f}s @ {sr} Hz "
                     f"from {start_seconds:.2f}s")
        return _to_pcm(audio, sr, start_seconds)


class FFmpegDecoder:
    """
    Extracts audio from any container ffmpeg understands (MOV, MP4, MXF...).

    The requested range is written to a temporary mono float WAV and read
    back with soundfile, so video files from the camera can be passed as is.
    """

    def __init__(self, ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH

    def duration(self, path: MediaRef) -> float:
        path = str(path)
        if not os.path.exists(path):
            raise DecodeNotFoundError(path)

        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            "-select_streams", "a",
            path,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=60)
            data = json.loads(result.stdout)
        except FileNotFoundError as e:
            raise DecodeInternalError(f"ffprobe not found at {self.ffprobe_path}", path=path) from e
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, json.JSONDecodeError) as e:
            raise UnsupportedFormatError(f"ffprobe failed on {path}: {e}", path=path) from e

        if not data.get("streams"):
            raise UnsupportedFormatError(f"No audio stream in {path}", path=path)
        try:
            return float(data["format"]["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise UnsupportedFormatError(f"ffprobe reported no duration for {path}", path=path) from e

    def decode(self, path: MediaRef, start_seconds: float, duration_seconds: float,
               sample_rate: int, channels: int = 1, checkpoint: Checkpoint = NEVER) -> PcmBuffer:
        path = str(path)
        if channels != 1:
            raise UnsupportedFormatError(f"Only mono decoding is supported, got channels={channels}", path=path)
        _check_range(path, start_seconds, duration_seconds, self.duration(path))

        timeout = None
        if checkpoint.deadline is not None:
            timeout = max(0.0, checkpoint.deadline - time.monotonic())
        if checkpoint.interrupted():
            raise DecodeCancelledError(f"Decode of {path} interrupted before start", path=path)

        with tempfile.TemporaryDirectory(prefix="lavsync_") as tmp_dir:
            wav_path = os.path.join(tmp_dir, "extract.wav")
            cmd = [
                self.ffmpeg_path,
                "-nostdin", "-hide_banner", "-loglevel", "error",
                "-ss", f"{start_seconds:.6f}",
                "-t", f"{duration_seconds:.6f}",
                "-i", path,
                "-vn",
                "-ac", "1",
                "-ar", str(int(sample_rate)),
                "-acodec", "pcm_f32le",
                "-y", wav_path,
            ]
            try:
                subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
            except FileNotFoundError as e:
                raise DecodeInternalError(f"ffmpeg not found at {self.ffmpeg_path}", path=path) from e
            except subprocess.TimeoutExpired as e:
                raise DecodeCancelledError(f"Decode of {path} exceeded the deadline", path=path) from e
            except subprocess.CalledProcessError as e:
                raise UnsupportedFormatError(f"ffmpeg failed on {path}: {e.stderr.strip()}", path=path) from e

            try:
                audio, sr = sf.read(wav_path, dtype="float32", always_2d=False)
            except RuntimeError as e:
                raise DecodeInternalError(f"Cannot read ffmpeg output for {path}: {e}", path=path) from e

        if audio.ndim > 1:
            audio = audio.mean(axis=1)
        logger.debug(f"ffmpeg extracted {Path(path).name}: {len(audio) / sr:.2f}s @ {sr} Hz "
                     f"from {start_seconds:.2f}s")
        return _to_pcm(audio, sr, start_seconds)


class ArrayDecoder:
    """
    Serves PCM already held in memory.

    ``sources`` maps a key to ``(samples, sample_rate)``; multichannel arrays
    are ``(channels, n)`` as librosa lays them out.
    """

    def __init__(self, sources: Optional[Dict[str, Tuple[np.ndarray, int]]] = None):
        self._sources: Dict[str, Tuple[np.ndarray, int]] = {}
        for key, (samples, sample_rate) in (sources or {}).items():
            self.add(key, samples, sample_rate)

    def add(self, key: MediaRef, samples: np.ndarray, sample_rate: int) -> None:
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim > 1:
            samples = librosa.to_mono(samples)
        self._sources[str(key)] = (samples, int(sample_rate))

    def _get(self, path: MediaRef) -> Tuple[np.ndarray, int]:
        try:
            return self._sources[str(path)]
        except KeyError:
            raise DecodeNotFoundError(str(path)) from None

    def duration(self, path: MediaRef) -> float:
        samples, sample_rate = self._get(path)
        return len(samples) / float(sample_rate)

    def decode(self, path: MediaRef, start_seconds: float, duration_seconds: float,
               sample_rate: int, channels: int = 1, checkpoint: Checkpoint = NEVER) -> PcmBuffer:
        if channels != 1:
            raise UnsupportedFormatError(f"Only mono decoding is supported, got channels={channels}", path=str(path))
        if checkpoint.interrupted():
            raise DecodeCancelledError(f"Decode of {path} interrupted before start", path=str(path))

        samples, source_rate = self._get(path)
        _check_range(path, start_seconds, duration_seconds, len(samples) / float(source_rate))

        first = int(round(start_seconds * source_rate))
        count = int(round(duration_seconds * source_rate))
        segment = samples[first:first + count]
        resampled = source_rate != sample_rate
        if resampled:
            segment = librosa.resample(segment, orig_sr=source_rate, target_sr=sample_rate)
        return _to_pcm(segment, sample_rate, start_seconds, clip=resampled)
