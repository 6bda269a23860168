from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import wave
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)

CANONICAL_SAMPLE_RATE = 16000
CANONICAL_CHANNELS = 1
DEFAULT_SEGMENT_SUFFIX = ".wav"

_MIME_TO_SUFFIX = {
    "audio/webm": ".webm",
    "audio/mp4": ".mp4",
    "audio/m4a": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
}


class NormalizationError(ValueError):
    """Raised when a segment cannot be converted to canonical audio."""


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def resolve_segment_suffix(filename: Optional[str], content_type: Optional[str] = None) -> str:
    """Pick the on-disk suffix used to hint the decoder.

    Browser recorders send names like `chunk.webm;codecs=opus`; the codec tail
    is dropped. `.bin` carries no format information and is treated as WAV.
    """
    suffix = Path(str(filename or "")).suffix.split(";")[0].strip().lower()
    if not suffix:
        mime = str(content_type or "").split(";")[0].strip().lower()
        suffix = _MIME_TO_SUFFIX.get(mime, "")
    if not suffix or suffix == ".bin" or not suffix[1:].isalnum():
        return DEFAULT_SEGMENT_SUFFIX
    return suffix


def load_wav16k_mono_float32(path: Path) -> np.ndarray:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        rate = wf.getframerate()
        width = wf.getsampwidth()
        frames = wf.getnframes()
        if channels != CANONICAL_CHANNELS:
            raise ValueError(f"Expected mono WAV, got {channels} channels")
        if rate != CANONICAL_SAMPLE_RATE:
            raise ValueError(f"Expected 16kHz WAV, got {rate}Hz")
        if width != 2:
            raise ValueError(f"Expected 16-bit PCM WAV, got sampwidth={width}")
        raw = wf.readframes(frames)
    audio_i16 = np.frombuffer(raw, dtype="<i2")
    return (audio_i16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def wav_rms(path: Path) -> float:
    return compute_rms(load_wav16k_mono_float32(path))


class AudioNormalizer:
    """Convert arbitrary segment encodings into 16kHz mono PCM WAV.

    Prefers ffmpeg when present; falls back to `miniaudio` decode/convert.
    Every temporary artifact lives in a per-segment directory that is removed
    when the `normalized()` context exits, on success or failure.
    """

    def __init__(
        self,
        tmp_dir: Path,
        *,
        ffmpeg_bin: Optional[str] = None,
        timeout_sec: int = 60,
        max_bytes: int = 25 * 1024 * 1024,
    ):
        self._tmp_dir = tmp_dir
        self._ffmpeg_bin = ffmpeg_bin
        self._timeout_sec = timeout_sec
        self._max_bytes = max_bytes

    @contextmanager
    def normalized(self, data: bytes, filename: str, prefix: str = "segment") -> Iterator[Path]:
        if not data:
            raise NormalizationError("Audio segment is empty.")
        if len(data) > self._max_bytes:
            raise NormalizationError(
                f"Audio segment too large ({len(data) / (1024 * 1024):.1f}MB), "
                f"max allowed is {self._max_bytes / (1024 * 1024):.1f}MB"
            )

        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        suffix = resolve_segment_suffix(filename)
        with tempfile.TemporaryDirectory(prefix=f"{prefix}_", dir=str(self._tmp_dir)) as work_dir:
            input_path = Path(work_dir) / f"input{suffix}"
            out_path = Path(work_dir) / "canonical.wav"
            input_path.write_bytes(data)

            self._convert(input_path, out_path)
            if not out_path.exists() or out_path.stat().st_size == 0:
                raise NormalizationError("Audio conversion produced an empty or missing output file.")
            yield out_path

    def _convert(self, input_path: Path, out_path: Path) -> None:
        ffmpeg = self._ffmpeg_bin or _which("ffmpeg")
        if ffmpeg:
            self._convert_with_ffmpeg(ffmpeg, input_path, out_path)
            return
        self._convert_with_miniaudio(input_path, out_path)

    def _convert_with_ffmpeg(self, ffmpeg: str, input_path: Path, out_path: Path) -> None:
        cmd = [
            ffmpeg,
            "-y",
            "-i",
            str(input_path),
            "-ar",
            str(CANONICAL_SAMPLE_RATE),
            "-ac",
            str(CANONICAL_CHANNELS),
            "-c:a",
            "pcm_s16le",
            str(out_path),
        ]
        try:
            subprocess.run(
                cmd,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout_sec,
            )
        except subprocess.TimeoutExpired as e:
            raise NormalizationError(f"Audio conversion via ffmpeg timed out after {self._timeout_sec}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (
                e.stderr.decode("utf-8", "ignore")
                if isinstance(e.stderr, (bytes, bytearray))
                else str(e.stderr or "")
            )
            tail = stderr.strip()[-400:]
            logger.warning("ffmpeg conversion failed input=%s rc=%s", input_path.name, e.returncode)
            raise NormalizationError(
                f"Audio conversion failed via ffmpeg: {tail or 'unknown error'}"
            ) from e
        except OSError as e:
            raise NormalizationError(f"Audio conversion could not start ffmpeg: {e}") from e

    def _convert_with_miniaudio(self, input_path: Path, out_path: Path) -> None:
        try:
            import miniaudio  # type: ignore
        except Exception:
            raise NormalizationError(
                "Audio conversion requires `ffmpeg` or the Python dependency `miniaudio`."
            )

        try:
            decoded = miniaudio.decode_file(
                str(input_path),
                output_format=miniaudio.SampleFormat.SIGNED16,
                nchannels=CANONICAL_CHANNELS,
                sample_rate=CANONICAL_SAMPLE_RATE,
            )
            pcm_bytes = decoded.samples.tobytes()
        except Exception as e:
            raise NormalizationError(f"Audio conversion failed: {e}") from e
        if not pcm_bytes:
            raise NormalizationError("Audio conversion decoded no samples.")

        with wave.open(str(out_path), "wb") as wf:
            wf.setnchannels(CANONICAL_CHANNELS)
            wf.setsampwidth(2)
            wf.setframerate(CANONICAL_SAMPLE_RATE)
            wf.writeframes(pcm_bytes)
