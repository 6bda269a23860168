from types import SimpleNamespace

import httpx
import openai
import pytest

from backend.internal_core.config import load_config
from backend.llm import LlamaCppChatModel, OpenAIChatModel, ScriptedChatModel, build_chat_model
from backend.llm.base import ChatModelError

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class _FakeStream:
    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error
        self.closed = False

    def __iter__(self):
        yield from self._chunks
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class _FakeCompletions:
    def __init__(self, stream=None, error=None, reply=""):
        self.stream = stream
        self.error = error
        self.reply = reply
        self.kwargs = {}

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            return self.stream
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))])


def _client(completions: _FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_openai_stream_yields_non_empty_deltas_and_closes() -> None:
    stream = _FakeStream([_chunk("Hel"), _chunk(None), _chunk("lo"), SimpleNamespace(choices=[])])
    completions = _FakeCompletions(stream=stream)
    model = OpenAIChatModel("sk-test", model="gpt-test", client=_client(completions))

    deltas = list(model.stream_chat([{"role": "user", "content": "hi"}], temperature=0.2))
    assert deltas == ["Hel", "lo"]
    assert stream.closed is True
    assert completions.kwargs["model"] == "gpt-test"
    assert completions.kwargs["temperature"] == 0.2
    assert "max_tokens" not in completions.kwargs


def test_openai_open_failure_raises_before_iteration() -> None:
    error = openai.RateLimitError(
        "slow down", response=httpx.Response(429, request=_REQUEST), body=None
    )
    model = OpenAIChatModel("sk-test", client=_client(_FakeCompletions(error=error)))
    with pytest.raises(ChatModelError) as excinfo:
        model.stream_chat([{"role": "user", "content": "hi"}], temperature=0.2)
    assert excinfo.value.rate_limited is True


def test_openai_mid_stream_failure_is_wrapped_and_closes() -> None:
    stream = _FakeStream([_chunk("partial")], error=openai.APIConnectionError(request=_REQUEST))
    model = OpenAIChatModel("sk-test", client=_client(_FakeCompletions(stream=stream)))
    deltas = model.stream_chat([{"role": "user", "content": "hi"}], temperature=0.2)
    assert next(deltas) == "partial"
    with pytest.raises(ChatModelError) as excinfo:
        next(deltas)
    assert excinfo.value.code == "UPSTREAM_UNAVAILABLE"
    assert stream.closed is True


def test_openai_complete_uses_non_streaming_call() -> None:
    completions = _FakeCompletions(reply="A summary.")
    model = OpenAIChatModel("sk-test", client=_client(completions))
    assert model.complete([{"role": "user", "content": "x"}], temperature=0.5, max_tokens=500) == "A summary."
    assert completions.kwargs["max_tokens"] == 500
    assert "stream" not in completions.kwargs


def test_openai_without_key_is_not_configured() -> None:
    with pytest.raises(ChatModelError) as excinfo:
        OpenAIChatModel("").stream_chat([{"role": "user", "content": "x"}], temperature=0.2)
    assert excinfo.value.code == "NOT_CONFIGURED"


def test_llama_cpp_missing_model_fails_on_open(tmp_path) -> None:
    model = LlamaCppChatModel(str(tmp_path / "missing.gguf"))
    with pytest.raises(ChatModelError) as excinfo:
        model.stream_chat([{"role": "user", "content": "x"}], temperature=0.2)
    assert excinfo.value.code == "NOT_CONFIGURED"


def test_scripted_model_replays_reply_and_counts_closes() -> None:
    model = ScriptedChatModel("one two three")
    deltas = model.stream_chat([{"role": "user", "content": "x"}], temperature=0.3)
    assert "".join(deltas) == "one two three"
    assert model.tokens_produced == 3
    assert model.streams_closed == 1


def test_build_chat_model_selects_backend(monkeypatch) -> None:
    monkeypatch.setenv("SCRIBE_LLM_BACKEND", "mock")
    assert isinstance(build_chat_model(load_config()), ScriptedChatModel)
    monkeypatch.setenv("SCRIBE_LLM_BACKEND", "openai")
    assert isinstance(build_chat_model(load_config()), OpenAIChatModel)
    monkeypatch.setenv("SCRIBE_LLM_BACKEND", "nope")
    with pytest.raises(ValueError):
        build_chat_model(load_config())
