from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal

TranscriptionErrorKind = Literal["rate_limited", "invalid_input", "upstream_unavailable"]


class TranscriptionError(RuntimeError):
    def __init__(self, kind: TranscriptionErrorKind, message: str, provider_name: str):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider_name = provider_name


class TranscriptionProvider(ABC):
    """Speech-to-text over canonical 16kHz mono WAV. No retries at this layer."""

    @abstractmethod
    def transcribe(self, wav_path: str, language: str = "en", timeout_sec: int = 60) -> str: ...

    @abstractmethod
    def name(self) -> str: ...
