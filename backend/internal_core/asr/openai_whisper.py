from __future__ import annotations

from typing import Any, Optional

import openai
from openai import OpenAI

from .base import TranscriptionError, TranscriptionErrorKind, TranscriptionProvider


def classify_openai_error(exc: Exception) -> TranscriptionErrorKind:
    if isinstance(exc, openai.RateLimitError):
        return "rate_limited"
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError)):
        return "invalid_input"
    return "upstream_unavailable"


class OpenAIWhisperProvider(TranscriptionProvider):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "whisper-1",
        base_url: Optional[str] = None,
        client: Any = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._client = client

    @property
    def client(self) -> Any:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise TranscriptionError(
                    "upstream_unavailable",
                    "OpenAI API key is not configured (set SCRIBE_OPENAI_API_KEY or OPENAI_API_KEY)",
                    self.name(),
                )
            self._client = OpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    def name(self) -> str:
        return "openai_whisper"

    def transcribe(self, wav_path: str, language: str = "en", timeout_sec: int = 60) -> str:
        kwargs: dict[str, Any] = {"model": self._model}
        if language and language != "auto":
            kwargs["language"] = language
        try:
            with open(wav_path, "rb") as fh:
                response = self.client.with_options(timeout=timeout_sec).audio.transcriptions.create(
                    file=fh, **kwargs
                )
        except openai.OpenAIError as exc:
            raise TranscriptionError(classify_openai_error(exc), str(exc), self.name()) from exc
        except OSError as exc:
            raise TranscriptionError("invalid_input", f"Cannot read canonical audio: {exc}", self.name()) from exc

        return str(getattr(response, "text", "") or "")
