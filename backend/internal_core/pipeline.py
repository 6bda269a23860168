from __future__ import annotations

"""
Upload-to-text pipeline shared by session segments and standalone memories.

Design intent:
- Archive the raw bytes, read them back, normalize, then transcribe.
- Map every pipeline failure onto one client-facing error vocabulary.
"""

import logging
from typing import Optional

from .asr.base import TranscriptionError, TranscriptionProvider
from .audio_utils import AudioNormalizer, NormalizationError, wav_rms
from .blob_store import BlobNotFound, BlobStore
from .errors import DependencyError, NoSegmentData, ProcessingFailed, ScribeError, rate_limited

logger = logging.getLogger(__name__)


class AudioTextPipeline:
    def __init__(
        self,
        normalizer: AudioNormalizer,
        transcriber: TranscriptionProvider,
        blob_store: BlobStore,
        *,
        language: str = "en",
        asr_timeout_sec: int = 60,
        silence_rms: float = 0.0,
    ):
        self._normalizer = normalizer
        self._transcriber = transcriber
        self._blob_store = blob_store
        self._language = language
        self._asr_timeout_sec = int(asr_timeout_sec)
        self._silence_rms = float(silence_rms)

    def run(self, key: str, data: bytes, filename: Optional[str], *, prefix: str) -> str:
        """Return the transcript of one upload ("" when gated as silence)."""
        self._blob_store.put(key, data)
        stored = self._blob_store.get(key)

        with self._normalizer.normalized(stored, filename or key, prefix=prefix) as wav_path:
            if self._silence_rms > 0:
                rms = wav_rms(wav_path)
                if rms < self._silence_rms:
                    logger.info("upload silent key=%s rms=%.5f", key, rms)
                    return ""
            return self._transcriber.transcribe(
                str(wav_path), language=self._language, timeout_sec=self._asr_timeout_sec
            )


def pipeline_error(exc: Exception) -> ScribeError:
    if isinstance(exc, BlobNotFound):
        return NoSegmentData("No data found for the uploaded audio.")
    if isinstance(exc, NormalizationError):
        return ProcessingFailed(f"Audio processing failed: {exc}", detail={"stage": "normalize"})
    if isinstance(exc, TranscriptionError):
        error: DependencyError = ProcessingFailed(
            f"Transcription failed: {exc.message}",
            detail={"stage": "transcribe", "kind": exc.kind, "provider": exc.provider_name},
        )
        if exc.kind == "rate_limited":
            return rate_limited(error)
        return error
    logger.exception("unexpected audio pipeline failure")
    return ProcessingFailed("Audio processing failed.", detail={"stage": "unknown"})
