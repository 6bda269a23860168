from __future__ import annotations

from threading import Lock

from .base import TranscriptionProvider


class MockTranscriber(TranscriptionProvider):
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 0

    def transcribe(self, wav_path: str, language: str = "en", timeout_sec: int = 60) -> str:
        with self._lock:
            self._counter += 1
            n = self._counter
        return f"(mock) simulated transcript for segment {n}."

    def name(self) -> str:
        return "mock"
