from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Sequence

ChatMessage = Dict[str, str]


class ChatModelError(RuntimeError):
    def __init__(self, code: str, message: str, backend_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.backend_name = backend_name

    @property
    def rate_limited(self) -> bool:
        return self.code == "RATE_LIMITED"


class ChatModel(ABC):
    @abstractmethod
    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        """Return a generator of text deltas.

        Closing the generator must release the upstream call.
        """

    def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        deltas = self.stream_chat(messages, temperature=temperature, max_tokens=max_tokens)
        try:
            return "".join(deltas)
        finally:
            close = getattr(deltas, "close", None)
            if callable(close):
                close()

    @abstractmethod
    def name(self) -> str: ...
