from __future__ import annotations

import re
import time
from threading import Lock
from typing import Any, Iterator, Optional, Sequence

from .base import ChatMessage, ChatModel, ChatModelError

_TOKEN_RE = re.compile(r"\S+\s*|\s+")


class ScriptedChatModel(ChatModel):
    """Deterministic backend that replays a canned reply word by word.

    `fail_on_open` fails the call before any token; `fail_after` fails the
    stream after that many tokens have been produced.
    """

    def __init__(
        self,
        reply: str = "(mock) answer generated without a language model.",
        *,
        fail_on_open: Optional[str] = None,
        fail_after: Optional[int] = None,
        error_code: str = "UPSTREAM_UNAVAILABLE",
        token_delay_sec: float = 0.0,
    ):
        self._reply = reply
        self._fail_on_open = fail_on_open
        self._fail_after = fail_after
        self._error_code = error_code
        self._token_delay_sec = float(token_delay_sec)
        self._lock = Lock()
        self.calls: list[dict[str, Any]] = []
        self.tokens_produced = 0
        self.streams_closed = 0

    def name(self) -> str:
        return "mock"

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        with self._lock:
            self.calls.append(
                {
                    "messages": [dict(item) for item in messages],
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                }
            )
        if self._fail_on_open:
            raise ChatModelError(self._error_code, self._fail_on_open, self.name())
        return self._iter_tokens()

    def _iter_tokens(self) -> Iterator[str]:
        try:
            for index, token in enumerate(_TOKEN_RE.findall(self._reply)):
                if self._fail_after is not None and index >= self._fail_after:
                    raise ChatModelError(self._error_code, "scripted failure mid-stream", self.name())
                if self._token_delay_sec > 0:
                    time.sleep(self._token_delay_sec)
                with self._lock:
                    self.tokens_produced += 1
                yield token
        finally:
            with self._lock:
                self.streams_closed += 1
