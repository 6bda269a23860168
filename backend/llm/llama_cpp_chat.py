from __future__ import annotations

"""
Local GGUF chat backend via llama-cpp-python.

Design intent:
- Reuse the lazily-loaded `Llama` instance across requests.
- Serialize generations; a single llama.cpp context is not re-entrant.
"""

import os
from threading import Lock
from typing import Any, Iterator, Optional, Sequence

from .base import ChatMessage, ChatModel, ChatModelError


class LlamaCppChatModel(ChatModel):
    def __init__(
        self,
        model_path: str,
        *,
        n_ctx: int = 8192,
        n_gpu_layers: int = -1,
        chat_format: Optional[str] = None,
    ):
        self._model_path = model_path
        self._n_ctx = int(n_ctx)
        self._n_gpu_layers = int(n_gpu_layers)
        self._chat_format = chat_format or None
        self._llm: Any = None
        self._load_lock = Lock()
        self._run_lock = Lock()

    def name(self) -> str:
        return "llama_cpp"

    def _get_llm(self) -> Any:
        with self._load_lock:
            if self._llm is not None:
                return self._llm
            if not self._model_path:
                raise ChatModelError(
                    "NOT_CONFIGURED", "llama.cpp model path is missing. Set SCRIBE_LLAMA_CPP_MODEL.", self.name()
                )
            if not os.path.exists(self._model_path):
                raise ChatModelError(
                    "NOT_CONFIGURED", f"llama.cpp model file not found: {self._model_path}", self.name()
                )
            try:
                from llama_cpp import Llama  # type: ignore
            except Exception as exc:
                raise ChatModelError("NOT_CONFIGURED", f"llama_cpp import failed: {exc}", self.name()) from exc

            llm_kwargs: dict[str, Any] = {
                "model_path": self._model_path,
                "n_ctx": self._n_ctx,
                "n_gpu_layers": self._n_gpu_layers,
                "verbose": False,
            }
            if self._chat_format:
                llm_kwargs["chat_format"] = self._chat_format
            try:
                self._llm = Llama(**llm_kwargs)
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise ChatModelError("MODEL_LOAD_FAILED", str(exc), self.name()) from exc
                llm_kwargs.pop("chat_format", None)
                self._llm = Llama(**llm_kwargs)
            except Exception as exc:
                raise ChatModelError("MODEL_LOAD_FAILED", str(exc), self.name()) from exc
            return self._llm

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        llm = self._get_llm()
        return self._iter_deltas(llm, [dict(item) for item in messages], temperature, max_tokens)

    def _iter_deltas(
        self,
        llm: Any,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: Optional[int],
    ) -> Iterator[str]:
        with self._run_lock:
            chunks: Any = None
            try:
                chunks = llm.create_chat_completion(
                    messages=messages,
                    temperature=float(temperature),
                    max_tokens=max_tokens,
                    stream=True,
                )
                for chunk in chunks:
                    choices = chunk.get("choices") or [{}]
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield delta
            except ChatModelError:
                raise
            except Exception as exc:
                raise ChatModelError("GENERATION_FAILED", str(exc), self.name()) from exc
            finally:
                close = getattr(chunks, "close", None)
                if callable(close):
                    close()
