import asyncio
import dataclasses
import json
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from fastapi.testclient import TestClient

from backend.answer.engine import StreamingAnswerEngine
from backend.api.main import _get_memory_service, _get_session_controller, app
from backend.internal_core.asr.base import TranscriptionError, TranscriptionProvider
from backend.internal_core.auth import StaticTokenResolver
from backend.internal_core.blob_store import InMemoryBlobStore
from backend.internal_core.config import load_config
from backend.internal_core.memory_store import InMemoryMemoryStore
from backend.internal_core.session_store import InMemorySessionStore
from backend.llm.mock import ScriptedChatModel
from backend.memory.service import MemoryService
from backend.session.controller import SessionController
from backend.session.summary import SessionSummarizer

ALICE = {"Authorization": "Bearer tok-alice"}
BOB = {"Authorization": "Bearer tok-bob"}

_INJECTED = (
    "config",
    "token_resolver",
    "session_controller",
    "memory_service",
    "answer_engine",
    "chat_model",
)


class _BytesNormalizer:
    def __init__(self, work_dir: Path):
        self._work_dir = work_dir

    @contextmanager
    def normalized(self, data: bytes, filename: str, prefix: str = "segment") -> Iterator[Path]:
        path = self._work_dir / f"{prefix}.wav"
        path.write_bytes(data)
        yield path


class _EchoTranscriber(TranscriptionProvider):
    def transcribe(self, wav_path: str, language: str = "en", timeout_sec: int = 60) -> str:
        text = Path(wav_path).read_bytes().decode("utf-8")
        if text == "throttle":
            raise TranscriptionError("rate_limited", "429 from upstream", self.name())
        return text

    def name(self) -> str:
        return "echo"


def _install(tmp_path: Path, answer_model: ScriptedChatModel) -> None:
    app.state.token_resolver = StaticTokenResolver({"tok-alice": "alice", "tok-bob": "bob"})
    app.state.session_controller = SessionController(
        InMemorySessionStore(ttl_seconds=3600),
        _BytesNormalizer(tmp_path),  # type: ignore[arg-type]
        _EchoTranscriber(),
        InMemoryBlobStore(),
        SessionSummarizer(ScriptedChatModel("Quick sync.")),
    )
    app.state.memory_service = MemoryService(
        InMemoryMemoryStore(),
        _BytesNormalizer(tmp_path),  # type: ignore[arg-type]
        _EchoTranscriber(),
        InMemoryBlobStore(),
    )
    app.state.answer_engine = StreamingAnswerEngine(answer_model)


def _clear_injected_state() -> None:
    for name in _INJECTED:
        if hasattr(app.state, name):
            delattr(app.state, name)


def _sse_payloads(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.split("\n\n") if line.startswith("data: ")]


def _start(client: TestClient) -> str:
    response = client.post("/sessions", json={"title": "sync"}, headers=ALICE)
    assert response.status_code == 201
    assert response.json()["status"] == "active"
    return response.json()["session_id"]


def test_healthz() -> None:
    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}


def test_full_session_flow_with_frozen_answer(tmp_path: Path) -> None:
    answer_model = ScriptedChatModel("On Friday.")
    _install(tmp_path, answer_model)
    client = TestClient(app)
    try:
        session_id = _start(client)

        first = client.post(f"/sessions/{session_id}/segments?filename=a.webm", content=b"ship it", headers=ALICE)
        assert first.status_code == 200
        assert first.json()["transcribed_text"] == "ship it"
        assert first.json()["order"] == 0
        assert first.json()["stored"] is True

        second = client.post(f"/sessions/{session_id}/segments?filename=b.webm", content=b"on friday", headers=ALICE)
        assert second.json()["order"] == 1

        ended = client.post(f"/sessions/{session_id}/end", headers=ALICE)
        assert ended.status_code == 200
        assert ended.json() == {"session_id": session_id, "status": "completed"}

        detail = client.get(f"/sessions/{session_id}", headers=ALICE).json()
        assert detail["full_text"] == "ship it on friday"
        assert detail["summary"] == "Summary:\n\nQuick sync."
        assert [f["order"] for f in detail["fragments"]] == [0, 1]

        response = client.post(f"/sessions/{session_id}/ask", json={"question": "When?"}, headers=ALICE)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        payloads = _sse_payloads(response.text)
        assert payloads == [{"text": "On "}, {"text": "Friday."}, {"event": "EOS"}]
        assert answer_model.streams_closed == 1
    finally:
        _clear_injected_state()


def test_missing_or_bad_token_is_unauthorized(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        assert client.post("/sessions").status_code == 401
        response = client.get("/sessions", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"
    finally:
        _clear_injected_state()


def test_foreign_and_unknown_sessions(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        session_id = _start(client)
        forbidden = client.post(f"/sessions/{session_id}/segments", content=b"x", headers=BOB)
        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "FORBIDDEN"
        missing = client.get("/sessions/does-not-exist", headers=ALICE)
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"
        assert client.get("/sessions", headers=BOB).json() == []
    finally:
        _clear_injected_state()


def test_segment_error_statuses(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        session_id = _start(client)
        empty = client.post(f"/sessions/{session_id}/segments", content=b"", headers=ALICE)
        assert empty.status_code == 400
        assert empty.json()["code"] == "INVALID_INPUT"

        throttled = client.post(f"/sessions/{session_id}/segments", content=b"throttle", headers=ALICE)
        assert throttled.status_code == 429
        assert throttled.json()["code"] == "PROCESSING_FAILED"

        assert client.post(f"/sessions/{session_id}/end", headers=ALICE).status_code == 200
        late = client.post(f"/sessions/{session_id}/segments", content=b"late", headers=ALICE)
        assert late.status_code == 409
        assert late.json()["code"] == "NOT_ACTIVE"
        again = client.post(f"/sessions/{session_id}/end", headers=ALICE)
        assert again.status_code == 409
        assert again.json()["code"] == "ALREADY_COMPLETED"
    finally:
        _clear_injected_state()


def test_frozen_ask_on_active_session_is_rejected_without_model_call(tmp_path: Path) -> None:
    answer_model = ScriptedChatModel()
    _install(tmp_path, answer_model)
    client = TestClient(app)
    try:
        session_id = _start(client)
        client.post(f"/sessions/{session_id}/segments", content=b"hello", headers=ALICE)
        response = client.post(f"/sessions/{session_id}/ask", json={"question": "?"}, headers=ALICE)
        assert response.status_code == 409
        assert response.json()["code"] == "NOT_COMPLETED"
        assert answer_model.calls == []
    finally:
        _clear_injected_state()


def test_live_ask_streams_while_active(tmp_path: Path) -> None:
    answer_model = ScriptedChatModel("Budget talk.")
    _install(tmp_path, answer_model)
    client = TestClient(app)
    try:
        session_id = _start(client)
        empty = client.post(f"/sessions/{session_id}/ask-live", json={"question": "Topic?"}, headers=ALICE)
        assert empty.status_code == 409
        assert empty.json()["code"] == "EMPTY_TRANSCRIPT"

        client.post(f"/sessions/{session_id}/segments", content=b"the budget", headers=ALICE)
        response = client.post(f"/sessions/{session_id}/ask-live", json={"question": "Topic?"}, headers=ALICE)
        assert response.status_code == 200
        assert _sse_payloads(response.text)[-1] == {"event": "EOS"}
        assert answer_model.calls[0]["temperature"] == 0.3
    finally:
        _clear_injected_state()


def test_answer_failures_before_and_during_stream(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel(fail_on_open="backend offline"))
    client = TestClient(app)
    try:
        session_id = _start(client)
        client.post(f"/sessions/{session_id}/segments", content=b"hello", headers=ALICE)
        pre = client.post(f"/sessions/{session_id}/ask-live", json={"question": "?"}, headers=ALICE)
        assert pre.status_code == 502
        assert pre.json()["code"] == "GENERATION_FAILED"

        app.state.answer_engine = StreamingAnswerEngine(ScriptedChatModel("one two three", fail_after=1))
        mid = client.post(f"/sessions/{session_id}/ask-live", json={"question": "?"}, headers=ALICE)
        assert mid.status_code == 200
        payloads = _sse_payloads(mid.text)
        assert payloads[0] == {"text": "one "}
        assert payloads[-1]["error"] == "An error occurred during streaming."
        assert {"event": "EOS"} not in payloads
    finally:
        _clear_injected_state()


def test_list_and_audit(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        session_id = _start(client)
        client.post(f"/sessions/{session_id}/segments", content=b"hello", headers=ALICE)
        client.post(f"/sessions/{session_id}/end", headers=ALICE)

        listed = client.get("/sessions", headers=ALICE).json()
        assert [item["session_id"] for item in listed] == [session_id]
        assert listed[0]["fragment_count"] == 1
        assert listed[0]["status"] == "completed"

        events = client.get(f"/sessions/{session_id}/audit", headers=ALICE).json()
        types = [event["type"] for event in events]
        assert types[0] == "SESSION_CREATED"
        assert "SEGMENT_STORED" in types
        assert types.count("FINALIZE") == 1
        assert "SUMMARY_DONE" in types
        assert all("hello" not in event["detail"] for event in events)
    finally:
        _clear_injected_state()


def test_oversized_content_length_is_rejected_before_reading_body(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    app.state.config = dataclasses.replace(load_config(), SCRIBE_MAX_SEGMENT_BYTES=4)
    client = TestClient(app)
    try:
        session_id = _start(client)
        response = client.post(f"/sessions/{session_id}/segments", content=b"0123456789", headers=ALICE)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"
        assert "max 4" in response.json()["detail"]

        memory = client.post("/memories", content=b"0123456789", headers=ALICE)
        assert memory.status_code == 400
        assert memory.json()["code"] == "INVALID_INPUT"

        types = [event["type"] for event in client.get(f"/sessions/{session_id}/audit", headers=ALICE).json()]
        assert "SEGMENT_ACCEPTED" not in types
        assert client.get(f"/sessions/{session_id}", headers=ALICE).json()["fragments"] == []
    finally:
        _clear_injected_state()


def test_memory_upload_returns_created_record_scoped_to_owner(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        created = client.post("/memories?filename=note.webm", content=b"buy milk", headers=ALICE)
        assert created.status_code == 201
        body = created.json()
        assert body["transcription"] == "buy milk"
        assert body["memory"]["owner_id"] == "alice"
        assert body["memory"]["text"] == "buy milk"
        assert body["memory"]["created_at"]

        client.post("/memories", content=b"call dentist", headers=ALICE)
        listed = client.get("/memories", headers=ALICE).json()
        assert [item["text"] for item in listed] == ["call dentist", "buy milk"]
        assert client.get("/memories", headers=BOB).json() == []
        assert client.get("/memories").status_code == 401
    finally:
        _clear_injected_state()


def test_memory_upload_error_statuses(tmp_path: Path) -> None:
    _install(tmp_path, ScriptedChatModel())
    client = TestClient(app)
    try:
        empty = client.post("/memories", content=b"", headers=ALICE)
        assert empty.status_code == 400
        assert empty.json()["code"] == "INVALID_INPUT"

        throttled = client.post("/memories", content=b"throttle", headers=ALICE)
        assert throttled.status_code == 429
        assert throttled.json()["code"] == "PROCESSING_FAILED"
        assert throttled.json()["context"]["retryable"] is True

        blank = client.post("/memories", content=b"   ", headers=ALICE)
        assert blank.status_code == 201
        assert blank.json() == {"transcription": "", "memory": None}
        assert client.get("/memories", headers=ALICE).json() == []
    finally:
        _clear_injected_state()


def test_live_answer_stops_when_client_disconnects(tmp_path: Path) -> None:
    answer_model = ScriptedChatModel(" ".join(f"w{i}" for i in range(200)), token_delay_sec=0.01)
    _install(tmp_path, answer_model)
    client = TestClient(app)
    try:
        session_id = _start(client)
        client.post(f"/sessions/{session_id}/segments", content=b"the roadmap", headers=ALICE)

        path = f"/sessions/{session_id}/ask-live"
        body = json.dumps({"question": "Topic?"}).encode("utf-8")
        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode("utf-8"),
            "query_string": b"",
            "root_path": "",
            "headers": [
                (b"host", b"testserver"),
                (b"authorization", b"Bearer tok-alice"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode("ascii")),
            ],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        sent: list[dict] = []

        async def _drive() -> None:
            first_chunk = asyncio.Event()
            received = {"count": 0}

            async def receive() -> dict:
                received["count"] += 1
                if received["count"] == 1:
                    return {"type": "http.request", "body": body, "more_body": False}
                await first_chunk.wait()
                return {"type": "http.disconnect"}

            async def send(message: dict) -> None:
                sent.append(message)
                if message["type"] == "http.response.body" and message.get("body"):
                    first_chunk.set()

            await asyncio.wait_for(app(scope, receive, send), timeout=10)

        asyncio.run(_drive())

        deadline = time.monotonic() + 5
        while answer_model.streams_closed == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert answer_model.streams_closed == 1

        produced = answer_model.tokens_produced
        time.sleep(0.2)
        assert answer_model.tokens_produced == produced
        assert produced < 200

        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["status"] == 200
        chunks = [message["body"] for message in sent if message["type"] == "http.response.body" and message.get("body")]
        assert chunks
        assert _sse_payloads(chunks[0].decode("utf-8"))[0] == {"text": "w0 "}
        assert b"EOS" not in b"".join(chunks)
    finally:
        _clear_injected_state()


def test_state_getters_build_one_instance_under_concurrency(tmp_path: Path) -> None:
    chat_model = ScriptedChatModel()
    app.state.chat_model = chat_model
    app.state.config = dataclasses.replace(
        load_config(),
        SCRIBE_ASR_PROVIDER="mock",
        SCRIBE_TMP_DIR=str(tmp_path / "tmp"),
        SCRIBE_BLOB_DIR=str(tmp_path / "blobs"),
        SCRIBE_SUMMARY_ENABLED=True,
    )
    barrier = threading.Barrier(8)
    controllers: list[object] = []
    services: list[object] = []
    lock = threading.Lock()

    def build() -> None:
        barrier.wait(timeout=5)
        controller = _get_session_controller()
        service = _get_memory_service()
        with lock:
            controllers.append(controller)
            services.append(service)

    try:
        threads = [threading.Thread(target=build) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(controllers) == 8
        assert all(controller is controllers[0] for controller in controllers)
        assert all(service is services[0] for service in services)
        assert controllers[0] is app.state.session_controller
        assert controllers[0]._summarizer._chat_model is chat_model  # type: ignore[attr-defined]
    finally:
        _clear_injected_state()
