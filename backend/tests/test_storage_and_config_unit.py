from pathlib import Path

import pytest

from backend.internal_core.blob_store import BlobNotFound, InMemoryBlobStore, LocalBlobStore
from backend.internal_core.config import load_config
from backend.internal_core.session_store import InMemorySessionStore


def test_local_blob_store_round_trip_and_key_sanitizing(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")
    key = store.put("../s1/000000.webm", b"abc")
    assert key == "s1/000000.webm"
    assert store.get("s1/000000.webm") == b"abc"
    assert (tmp_path / "blobs" / "s1" / "000000.webm").exists()
    assert not any(p.name.endswith(".part") for p in (tmp_path / "blobs" / "s1").iterdir())


def test_missing_blob_raises_blob_not_found(tmp_path: Path) -> None:
    with pytest.raises(BlobNotFound):
        LocalBlobStore(tmp_path).get("s1/missing.wav")
    with pytest.raises(BlobNotFound):
        InMemoryBlobStore().get("s1/missing.wav")


def test_session_store_unknown_id_raises_key_error() -> None:
    store = InMemorySessionStore(ttl_seconds=0)
    with pytest.raises(KeyError):
        store.get_record("nope")
    record = store.create_session("alice")
    assert store.get_record(record.session_id) is record
    assert store.stale_records(now=record.last_activity + 10**6) == []


def test_config_defaults(monkeypatch) -> None:
    for name in ("SCRIBE_ASR_PROVIDER", "SCRIBE_LLM_BACKEND", "SCRIBE_SILENCE_RMS", "SCRIBE_CORS_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_config()
    assert cfg.SCRIBE_ASR_PROVIDER == "openai"
    assert cfg.SCRIBE_LLM_BACKEND == "openai"
    assert cfg.SCRIBE_SUMMARY_MAX_TOKENS == 500
    assert cfg.SCRIBE_SILENCE_RMS == 0.0
    assert cfg.cors_origins() == ["*"]


def test_config_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("SCRIBE_SESSION_TTL_SECONDS", "60")
    monkeypatch.setenv("SCRIBE_WHISPER_CPP_NO_GPU", "yes")
    monkeypatch.setenv("SCRIBE_CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.delenv("SCRIBE_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")
    cfg = load_config()
    assert cfg.SCRIBE_SESSION_TTL_SECONDS == 60
    assert cfg.SCRIBE_WHISPER_CPP_NO_GPU is True
    assert cfg.cors_origins() == ["http://a.test", "http://b.test"]
    assert cfg.SCRIBE_OPENAI_API_KEY == "sk-fallback"
