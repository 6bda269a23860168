from __future__ import annotations

"""
HTTP surface for the scribe backend.

Design intent:
- Keep routes thin: authenticate, delegate to the session controller or the
  answer engine or the memory service, and serialize.
- Run blocking pipeline work in the threadpool so sessions progress in parallel.
- Map the typed error hierarchy to JSON in one place.
"""

import logging
import threading
from pathlib import Path
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from backend.answer.engine import SSE_MEDIA_TYPE, AnswerStream, StreamingAnswerEngine
from backend.internal_core.asr import build_transcriber
from backend.internal_core.audio_utils import AudioNormalizer, resolve_segment_suffix
from backend.internal_core.auth import StaticTokenResolver, TokenResolver, bearer_token, parse_token_table
from backend.internal_core.blob_store import LocalBlobStore
from backend.internal_core.config import ServiceConfig, load_config
from backend.internal_core.contracts import (
    AuditEvent,
    MemoryItem,
    MemoryResult,
    SegmentResult,
    SessionListItem,
    SessionSnapshot,
    SessionStatus,
)
from backend.internal_core.errors import InvalidInput, ScribeError
from backend.internal_core.memory_store import InMemoryMemoryStore
from backend.internal_core.session_store import InMemorySessionStore
from backend.llm import ChatModel, build_chat_model
from backend.memory.service import MemoryService
from backend.session.controller import SessionController
from backend.session.summary import SessionSummarizer


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, max_length=200)
    calendar_event_id: str | None = Field(default=None, max_length=256)


class SessionStatusResponse(BaseModel):
    session_id: str
    status: SessionStatus


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(default="", max_length=4000)


_boot_config = load_config()
logging.getLogger("backend").setLevel(_boot_config.SCRIBE_LOG_LEVEL.upper())

app = FastAPI(title="scribe backend service")
logger = logging.getLogger(__name__)
_state_lock = threading.Lock()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.cors_origins() or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ScribeError)
async def scribe_error_handler(request: Request, exc: ScribeError) -> JSONResponse:
    content: dict[str, object] = {"detail": exc.message, "code": exc.code}
    if exc.detail:
        content["context"] = exc.detail
    if exc.status_code >= 500 or exc.status_code == 429:
        logger.warning("%s %s failed code=%s status=%d", request.method, request.url.path, exc.code, exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=content)


def _get_config() -> ServiceConfig:
    configured = getattr(app.state, "config", None)
    if isinstance(configured, ServiceConfig):
        return configured
    return _boot_config


def _get_token_resolver() -> TokenResolver:
    existing = getattr(app.state, "token_resolver", None)
    if isinstance(existing, TokenResolver):
        return existing
    with _state_lock:
        existing = getattr(app.state, "token_resolver", None)
        if isinstance(existing, TokenResolver):
            return existing
        created = StaticTokenResolver(parse_token_table(_get_config().SCRIBE_AUTH_TOKENS))
        setattr(app.state, "token_resolver", created)
        return created


def _get_chat_model() -> ChatModel:
    existing = getattr(app.state, "chat_model", None)
    if isinstance(existing, ChatModel):
        return existing
    with _state_lock:
        existing = getattr(app.state, "chat_model", None)
        if isinstance(existing, ChatModel):
            return existing
        created = build_chat_model(_get_config())
        setattr(app.state, "chat_model", created)
        return created


def _get_session_controller() -> SessionController:
    existing = getattr(app.state, "session_controller", None)
    if isinstance(existing, SessionController):
        return existing
    cfg = _get_config()
    chat_model = _get_chat_model() if cfg.SCRIBE_SUMMARY_ENABLED else None
    with _state_lock:
        existing = getattr(app.state, "session_controller", None)
        if isinstance(existing, SessionController):
            return existing
        summarizer = (
            SessionSummarizer(chat_model, max_tokens=cfg.SCRIBE_SUMMARY_MAX_TOKENS)
            if chat_model is not None
            else None
        )
        created = SessionController(
            InMemorySessionStore(ttl_seconds=cfg.SCRIBE_SESSION_TTL_SECONDS),
            AudioNormalizer(
                cfg.tmp_dir_path(),
                timeout_sec=cfg.SCRIBE_FFMPEG_TIMEOUT_SEC,
                max_bytes=cfg.SCRIBE_MAX_SEGMENT_BYTES,
            ),
            build_transcriber(cfg),
            LocalBlobStore(cfg.blob_dir_path()),
            summarizer,
            language=cfg.SCRIBE_ASR_LANGUAGE,
            asr_timeout_sec=cfg.SCRIBE_ASR_TIMEOUT_SEC,
            silence_rms=cfg.SCRIBE_SILENCE_RMS,
            max_segment_bytes=cfg.SCRIBE_MAX_SEGMENT_BYTES,
        )
        setattr(app.state, "session_controller", created)
        return created


def _get_memory_service() -> MemoryService:
    existing = getattr(app.state, "memory_service", None)
    if isinstance(existing, MemoryService):
        return existing
    cfg = _get_config()
    with _state_lock:
        existing = getattr(app.state, "memory_service", None)
        if isinstance(existing, MemoryService):
            return existing
        created = MemoryService(
            InMemoryMemoryStore(),
            AudioNormalizer(
                cfg.tmp_dir_path(),
                timeout_sec=cfg.SCRIBE_FFMPEG_TIMEOUT_SEC,
                max_bytes=cfg.SCRIBE_MAX_SEGMENT_BYTES,
            ),
            build_transcriber(cfg),
            LocalBlobStore(cfg.blob_dir_path()),
            language=cfg.SCRIBE_ASR_LANGUAGE,
            asr_timeout_sec=cfg.SCRIBE_ASR_TIMEOUT_SEC,
            max_bytes=cfg.SCRIBE_MAX_SEGMENT_BYTES,
        )
        setattr(app.state, "memory_service", created)
        return created


def _get_answer_engine() -> StreamingAnswerEngine:
    existing = getattr(app.state, "answer_engine", None)
    if isinstance(existing, StreamingAnswerEngine):
        return existing
    chat_model = _get_chat_model()
    with _state_lock:
        existing = getattr(app.state, "answer_engine", None)
        if isinstance(existing, StreamingAnswerEngine):
            return existing
        created = StreamingAnswerEngine(chat_model)
        setattr(app.state, "answer_engine", created)
        return created


def _require_owner(authorization: str | None = Header(default=None)) -> str:
    return _get_token_resolver().resolve(bearer_token(authorization))


def _reject_oversized(request: Request) -> None:
    raw = request.headers.get("content-length")
    if raw is None:
        return
    try:
        declared = int(raw)
    except ValueError:
        raise InvalidInput("Content-Length header is not an integer.") from None
    limit = _get_config().SCRIBE_MAX_SEGMENT_BYTES
    if declared > limit:
        raise InvalidInput(f"Audio upload too large ({declared} bytes, max {limit}).")


def _sse_response(request: Request, answer: AnswerStream) -> StreamingResponse:
    async def _relay() -> AsyncIterator[str]:
        try:
            async for event in iterate_in_threadpool(answer.events()):
                if await request.is_disconnected():
                    logger.info("answer client disconnected path=%s", request.url.path)
                    break
                yield event.to_sse()
        finally:
            answer.close()

    return StreamingResponse(
        _relay(),
        media_type=SSE_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionStatusResponse, status_code=201)
async def start_session(
    payload: StartSessionRequest | None = None,
    owner_id: str = Depends(_require_owner),
) -> SessionStatusResponse:
    payload = payload or StartSessionRequest()
    snapshot = await run_in_threadpool(
        _get_session_controller().start_session,
        owner_id,
        title=payload.title,
        calendar_event_id=payload.calendar_event_id,
    )
    return SessionStatusResponse(session_id=snapshot.session_id, status=snapshot.status)


@app.get("/sessions", response_model=list[SessionListItem])
async def list_sessions(owner_id: str = Depends(_require_owner)) -> list[SessionListItem]:
    return await run_in_threadpool(_get_session_controller().list_sessions, owner_id)


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, owner_id: str = Depends(_require_owner)) -> SessionSnapshot:
    return await run_in_threadpool(_get_session_controller().get_session, session_id, owner_id)


@app.get("/sessions/{session_id}/audit", response_model=list[AuditEvent])
async def get_session_audit(session_id: str, owner_id: str = Depends(_require_owner)) -> list[AuditEvent]:
    return await run_in_threadpool(_get_session_controller().get_audit, session_id, owner_id)


@app.post("/sessions/{session_id}/segments", response_model=SegmentResult)
async def submit_segment(
    session_id: str,
    request: Request,
    filename: str | None = Query(default=None, max_length=255),
    owner_id: str = Depends(_require_owner),
) -> SegmentResult:
    name = Path(str(filename or "")).name
    if not name:
        name = f"segment{resolve_segment_suffix(None, request.headers.get('content-type'))}"
    _reject_oversized(request)
    payload = await request.body()
    return await run_in_threadpool(
        _get_session_controller().submit_segment, session_id, owner_id, payload, name
    )


@app.post("/sessions/{session_id}/end", response_model=SessionStatusResponse)
async def end_session(session_id: str, owner_id: str = Depends(_require_owner)) -> SessionStatusResponse:
    status = await run_in_threadpool(_get_session_controller().request_end, session_id, owner_id)
    return SessionStatusResponse(session_id=session_id, status=status)


@app.post("/sessions/{session_id}/ask")
async def ask_frozen(
    session_id: str,
    payload: AskRequest,
    request: Request,
    owner_id: str = Depends(_require_owner),
) -> StreamingResponse:
    snapshot = await run_in_threadpool(_get_session_controller().get_session, session_id, owner_id)
    answer = await run_in_threadpool(_get_answer_engine().ask_frozen, snapshot, payload.question)
    return _sse_response(request, answer)


@app.post("/sessions/{session_id}/ask-live")
async def ask_live(
    session_id: str,
    payload: AskRequest,
    request: Request,
    owner_id: str = Depends(_require_owner),
) -> StreamingResponse:
    snapshot = await run_in_threadpool(_get_session_controller().get_session, session_id, owner_id)
    answer = await run_in_threadpool(_get_answer_engine().ask_live, snapshot, payload.question)
    return _sse_response(request, answer)


@app.post("/memories", response_model=MemoryResult, status_code=201)
async def create_memory(
    request: Request,
    filename: str | None = Query(default=None, max_length=255),
    owner_id: str = Depends(_require_owner),
) -> MemoryResult:
    name = Path(str(filename or "")).name
    if not name:
        name = f"memory{resolve_segment_suffix(None, request.headers.get('content-type'))}"
    _reject_oversized(request)
    payload = await request.body()
    return await run_in_threadpool(_get_memory_service().transcribe_memory, owner_id, payload, name)


@app.get("/memories", response_model=list[MemoryItem])
async def list_memories(owner_id: str = Depends(_require_owner)) -> list[MemoryItem]:
    return await run_in_threadpool(_get_memory_service().list_memories, owner_id)
