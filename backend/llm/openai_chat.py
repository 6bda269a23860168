from __future__ import annotations

from typing import Any, Iterator, Optional, Sequence

import openai
from openai import OpenAI

from .base import ChatMessage, ChatModel, ChatModelError


class OpenAIChatModel(ChatModel):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-3.5-turbo",
        base_url: Optional[str] = None,
        timeout_sec: float = 120.0,
        client: Any = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._timeout_sec = timeout_sec
        self._client = client

    @property
    def client(self) -> Any:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise ChatModelError(
                    "NOT_CONFIGURED",
                    "OpenAI API key is not configured (set SCRIBE_OPENAI_API_KEY or OPENAI_API_KEY)",
                    self.name(),
                )
            self._client = OpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout_sec,
            )
        return self._client

    def name(self) -> str:
        return "openai"

    def _wrap(self, exc: Exception) -> ChatModelError:
        if isinstance(exc, openai.RateLimitError):
            code = "RATE_LIMITED"
        elif isinstance(exc, openai.APIConnectionError):
            code = "UPSTREAM_UNAVAILABLE"
        elif isinstance(exc, openai.APIStatusError):
            code = f"UPSTREAM_HTTP_{exc.status_code}"
        else:
            code = "UPSTREAM_ERROR"
        return ChatModelError(code, str(exc), self.name())

    def _request_kwargs(
        self, messages: Sequence[ChatMessage], temperature: float, max_tokens: Optional[int]
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [dict(item) for item in messages],
            "temperature": float(temperature),
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = int(max_tokens)
        return kwargs

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        # Open eagerly so request-level failures surface before any streaming.
        try:
            stream = self.client.chat.completions.create(
                stream=True, **self._request_kwargs(messages, temperature, max_tokens)
            )
        except openai.OpenAIError as exc:
            raise self._wrap(exc) from exc
        return self._iter_deltas(stream)

    def _iter_deltas(self, stream: Any) -> Iterator[str]:
        try:
            for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0].delta, "content", None)
                if delta:
                    yield delta
        except openai.OpenAIError as exc:
            raise self._wrap(exc) from exc
        finally:
            stream.close()

    def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        try:
            completion = self.client.chat.completions.create(
                **self._request_kwargs(messages, temperature, max_tokens)
            )
        except openai.OpenAIError as exc:
            raise self._wrap(exc) from exc
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""
