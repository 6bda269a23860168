from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # backend/internal_core/config.py -> backend -> project root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_first(names: list[str], default: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


@dataclass(frozen=True)
class ServiceConfig:
    SCRIBE_TMP_DIR: str
    SCRIBE_BLOB_DIR: str
    SCRIBE_SESSION_TTL_SECONDS: int
    SCRIBE_AUTH_TOKENS: str
    SCRIBE_ASR_PROVIDER: str
    SCRIBE_ASR_LANGUAGE: str
    SCRIBE_ASR_TIMEOUT_SEC: int
    SCRIBE_OPENAI_API_KEY: str
    SCRIBE_OPENAI_BASE_URL: Optional[str]
    SCRIBE_TRANSCRIBE_MODEL: str
    SCRIBE_WHISPER_CPP_BIN: str
    SCRIBE_WHISPER_CPP_MODEL: str
    SCRIBE_WHISPER_CPP_NO_GPU: bool
    SCRIBE_FFMPEG_TIMEOUT_SEC: int
    SCRIBE_MAX_SEGMENT_BYTES: int
    SCRIBE_SILENCE_RMS: float
    SCRIBE_LLM_BACKEND: str
    SCRIBE_LLM_MODEL: str
    SCRIBE_LLM_TIMEOUT_SEC: int
    SCRIBE_LLAMA_CPP_MODEL: str
    SCRIBE_LLAMA_CPP_N_CTX: int
    SCRIBE_LLAMA_CPP_N_GPU_LAYERS: int
    SCRIBE_LLAMA_CPP_CHAT_FORMAT: str
    SCRIBE_SUMMARY_ENABLED: bool
    SCRIBE_SUMMARY_MAX_TOKENS: int
    SCRIBE_LOG_LEVEL: str
    SCRIBE_CORS_ORIGINS: str

    def tmp_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        return ((repo_root or _project_root()) / self.SCRIBE_TMP_DIR).resolve()

    def blob_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        return ((repo_root or _project_root()) / self.SCRIBE_BLOB_DIR).resolve()

    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.SCRIBE_CORS_ORIGINS.split(",") if item.strip()]


def load_config() -> ServiceConfig:
    return ServiceConfig(
        SCRIBE_TMP_DIR=_getenv_str("SCRIBE_TMP_DIR", "./tmp"),
        SCRIBE_BLOB_DIR=_getenv_str("SCRIBE_BLOB_DIR", "./tmp/segments"),
        SCRIBE_SESSION_TTL_SECONDS=_getenv_int("SCRIBE_SESSION_TTL_SECONDS", 14400),
        SCRIBE_AUTH_TOKENS=_getenv_str("SCRIBE_AUTH_TOKENS", ""),
        SCRIBE_ASR_PROVIDER=_getenv_str("SCRIBE_ASR_PROVIDER", "openai"),
        SCRIBE_ASR_LANGUAGE=_getenv_str("SCRIBE_ASR_LANGUAGE", "en"),
        SCRIBE_ASR_TIMEOUT_SEC=_getenv_int("SCRIBE_ASR_TIMEOUT_SEC", 60),
        SCRIBE_OPENAI_API_KEY=_getenv_first(["SCRIBE_OPENAI_API_KEY", "OPENAI_API_KEY"], ""),
        SCRIBE_OPENAI_BASE_URL=_getenv_str("SCRIBE_OPENAI_BASE_URL", "") or None,
        SCRIBE_TRANSCRIBE_MODEL=_getenv_str("SCRIBE_TRANSCRIBE_MODEL", "whisper-1"),
        SCRIBE_WHISPER_CPP_BIN=_getenv_str("SCRIBE_WHISPER_CPP_BIN", ""),
        SCRIBE_WHISPER_CPP_MODEL=_getenv_str("SCRIBE_WHISPER_CPP_MODEL", ""),
        SCRIBE_WHISPER_CPP_NO_GPU=_getenv_bool("SCRIBE_WHISPER_CPP_NO_GPU", False),
        SCRIBE_FFMPEG_TIMEOUT_SEC=_getenv_int("SCRIBE_FFMPEG_TIMEOUT_SEC", 60),
        SCRIBE_MAX_SEGMENT_BYTES=_getenv_int("SCRIBE_MAX_SEGMENT_BYTES", 25 * 1024 * 1024),
        SCRIBE_SILENCE_RMS=_getenv_float("SCRIBE_SILENCE_RMS", 0.0),
        SCRIBE_LLM_BACKEND=_getenv_str("SCRIBE_LLM_BACKEND", "openai"),
        SCRIBE_LLM_MODEL=_getenv_str("SCRIBE_LLM_MODEL", "gpt-3.5-turbo"),
        SCRIBE_LLM_TIMEOUT_SEC=_getenv_int("SCRIBE_LLM_TIMEOUT_SEC", 120),
        SCRIBE_LLAMA_CPP_MODEL=_getenv_str("SCRIBE_LLAMA_CPP_MODEL", ""),
        SCRIBE_LLAMA_CPP_N_CTX=_getenv_int("SCRIBE_LLAMA_CPP_N_CTX", 8192),
        SCRIBE_LLAMA_CPP_N_GPU_LAYERS=_getenv_int("SCRIBE_LLAMA_CPP_N_GPU_LAYERS", -1),
        SCRIBE_LLAMA_CPP_CHAT_FORMAT=_getenv_str("SCRIBE_LLAMA_CPP_CHAT_FORMAT", ""),
        SCRIBE_SUMMARY_ENABLED=_getenv_bool("SCRIBE_SUMMARY_ENABLED", True),
        SCRIBE_SUMMARY_MAX_TOKENS=_getenv_int("SCRIBE_SUMMARY_MAX_TOKENS", 500),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
        SCRIBE_CORS_ORIGINS=_getenv_str("SCRIBE_CORS_ORIGINS", "*"),
    )
