from __future__ import annotations

from ..config import ServiceConfig
from .base import TranscriptionError, TranscriptionErrorKind, TranscriptionProvider
from .mock import MockTranscriber
from .openai_whisper import OpenAIWhisperProvider
from .whisper_cpp import WhisperCppProvider, whisper_cpp_available


def build_transcriber(config: ServiceConfig) -> TranscriptionProvider:
    provider = (config.SCRIBE_ASR_PROVIDER or "").strip().lower()
    if provider == "openai":
        return OpenAIWhisperProvider(
            config.SCRIBE_OPENAI_API_KEY,
            model=config.SCRIBE_TRANSCRIBE_MODEL,
            base_url=config.SCRIBE_OPENAI_BASE_URL,
        )
    if provider == "whisper_cpp":
        return WhisperCppProvider(
            config.SCRIBE_WHISPER_CPP_BIN,
            config.SCRIBE_WHISPER_CPP_MODEL,
            no_gpu=config.SCRIBE_WHISPER_CPP_NO_GPU,
        )
    if provider == "mock":
        return MockTranscriber()
    raise ValueError(f"Unsupported SCRIBE_ASR_PROVIDER: {config.SCRIBE_ASR_PROVIDER!r}")


__all__ = [
    "MockTranscriber",
    "OpenAIWhisperProvider",
    "TranscriptionError",
    "TranscriptionErrorKind",
    "TranscriptionProvider",
    "WhisperCppProvider",
    "build_transcriber",
    "whisper_cpp_available",
]
