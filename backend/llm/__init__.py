from __future__ import annotations

from backend.internal_core.config import ServiceConfig

from .base import ChatMessage, ChatModel, ChatModelError
from .llama_cpp_chat import LlamaCppChatModel
from .mock import ScriptedChatModel
from .openai_chat import OpenAIChatModel


def build_chat_model(config: ServiceConfig) -> ChatModel:
    backend = (config.SCRIBE_LLM_BACKEND or "").strip().lower()
    if backend == "openai":
        return OpenAIChatModel(
            config.SCRIBE_OPENAI_API_KEY,
            model=config.SCRIBE_LLM_MODEL,
            base_url=config.SCRIBE_OPENAI_BASE_URL,
            timeout_sec=float(config.SCRIBE_LLM_TIMEOUT_SEC),
        )
    if backend == "llama_cpp":
        return LlamaCppChatModel(
            config.SCRIBE_LLAMA_CPP_MODEL,
            n_ctx=config.SCRIBE_LLAMA_CPP_N_CTX,
            n_gpu_layers=config.SCRIBE_LLAMA_CPP_N_GPU_LAYERS,
            chat_format=config.SCRIBE_LLAMA_CPP_CHAT_FORMAT,
        )
    if backend == "mock":
        return ScriptedChatModel()
    raise ValueError(f"Unsupported SCRIBE_LLM_BACKEND: {config.SCRIBE_LLM_BACKEND!r}")


__all__ = [
    "ChatMessage",
    "ChatModel",
    "ChatModelError",
    "LlamaCppChatModel",
    "OpenAIChatModel",
    "ScriptedChatModel",
    "build_chat_model",
]
