from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Literal, Optional

from backend.internal_core.contracts import SessionSnapshot
from backend.internal_core.errors import (
    AnswerGenerationFailed,
    DependencyError,
    EmptyTranscript,
    InvalidInput,
    NotCompleted,
    SessionNotActive,
    rate_limited,
)
from backend.llm.base import ChatMessage, ChatModel, ChatModelError

logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "An error occurred during streaming."
END_OF_STREAM_EVENT = "EOS"
SSE_MEDIA_TYPE = "text/event-stream"

FROZEN_SYSTEM_PROMPT = (
    "You are an intelligent assistant. Answer the user's question using only the provided "
    "meeting transcript. Do not use outside knowledge or assume anything the transcript does "
    "not state. If the transcript does not contain the answer, say clearly that the information "
    "is not available in the provided text."
)
LIVE_SYSTEM_PROMPT = (
    "You are an intelligent assistant. Answer the user's question concisely using only the "
    "provided live meeting transcript. The meeting is still in progress, so the transcript may "
    "be incomplete. If the transcript does not contain the answer, say clearly that the "
    "information is not available in the provided text."
)

LIVE_STATUSES = frozenset({"active", "draining", "completed"})

AnswerEventKind = Literal["delta", "end", "error"]


def encode_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@dataclass(frozen=True)
class AnswerEvent:
    kind: AnswerEventKind
    text: str = ""
    details: str = ""

    def payload(self) -> dict[str, Any]:
        if self.kind == "delta":
            return {"text": self.text}
        if self.kind == "end":
            return {"event": END_OF_STREAM_EVENT}
        return {"error": STREAM_ERROR_MESSAGE, "details": self.details}

    def to_sse(self) -> str:
        return encode_sse(self.payload())


def build_frozen_messages(full_text: str, question: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": FROZEN_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Meeting Transcript:\n---\n{full_text}\n---\n\nUser's Question: {question}",
        },
    ]


def build_live_messages(full_text: str, question: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": LIVE_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                "Live Meeting Transcript (may be incomplete):\n---\n"
                f"{full_text}\n---\n\nUser's Question: {question}"
            ),
        },
    ]


def _generation_error(exc: Exception) -> DependencyError:
    if isinstance(exc, ChatModelError):
        error: DependencyError = AnswerGenerationFailed(
            f"Answer generation failed: {exc.message}",
            detail={"backend": exc.backend_name, "upstream_code": exc.code},
        )
        return rate_limited(error) if exc.rate_limited else error
    return AnswerGenerationFailed(f"Answer generation failed: {exc}")


def _close_quietly(gen: Any) -> None:
    close = getattr(gen, "close", None)
    if not callable(close):
        return
    try:
        close()
    except ValueError:
        # Generator is executing on a worker thread; the cancel flag stops it.
        logger.debug("answer stream close deferred to running worker")


class AnswerStream:
    """One answer in flight: a primed upstream delta iterator plus a cancel flag.

    `prime()` pulls the first delta so that failures before any token can still
    be reported out-of-band. After that, `events()` relays deltas, then either
    an end event or (on failure) a single error event.
    """

    def __init__(self, upstream: Iterator[str], *, session_id: str, backend_name: str):
        self._upstream = upstream
        self._session_id = session_id
        self._backend_name = backend_name
        self._first: Optional[str] = None
        self._primed = False
        self._exhausted = False
        self._cancelled = False
        self._events: Optional[Iterator[AnswerEvent]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def prime(self) -> None:
        if self._primed:
            return
        self._primed = True
        try:
            self._first = next(self._upstream)
        except StopIteration:
            self._exhausted = True
        except Exception as exc:
            _close_quietly(self._upstream)
            logger.warning(
                "answer failed before first token session=%s backend=%s error=%s",
                self._session_id,
                self._backend_name,
                exc,
            )
            raise _generation_error(exc) from exc

    def events(self) -> Iterator[AnswerEvent]:
        if self._events is None:
            self._events = self._iter_events()
        return self._events

    def close(self) -> None:
        self._cancelled = True
        if self._events is not None:
            _close_quietly(self._events)
        _close_quietly(self._upstream)

    def _iter_events(self) -> Iterator[AnswerEvent]:
        self.prime()
        relayed = 0
        try:
            if self._first:
                relayed += 1
                yield AnswerEvent("delta", text=self._first)
            self._first = None
            if not self._exhausted:
                for delta in self._upstream:
                    if self._cancelled:
                        return
                    if delta:
                        relayed += 1
                        yield AnswerEvent("delta", text=delta)
            if self._cancelled:
                return
            logger.info("answer completed session=%s deltas=%d", self._session_id, relayed)
            yield AnswerEvent("end")
        except Exception as exc:
            message = exc.message if isinstance(exc, ChatModelError) else str(exc)
            logger.warning(
                "answer failed mid-stream session=%s deltas=%d error=%s", self._session_id, relayed, message
            )
            yield AnswerEvent("error", details=message or "Unknown error")
        finally:
            _close_quietly(self._upstream)


class StreamingAnswerEngine:
    def __init__(
        self,
        chat_model: ChatModel,
        *,
        frozen_temperature: float = 0.2,
        live_temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ):
        self._chat_model = chat_model
        self._frozen_temperature = float(frozen_temperature)
        self._live_temperature = float(live_temperature)
        self._max_tokens = max_tokens

    def ask_frozen(self, snapshot: SessionSnapshot, question: str) -> AnswerStream:
        question = _require_question(question)
        if snapshot.status != "completed":
            raise NotCompleted("Cannot ask about a session that has not completed.")
        if not snapshot.full_text.strip():
            raise EmptyTranscript("Session transcript is empty.")
        return self._open(
            snapshot.session_id,
            build_frozen_messages(snapshot.full_text, question),
            self._frozen_temperature,
        )

    def ask_live(self, snapshot: SessionSnapshot, question: str) -> AnswerStream:
        question = _require_question(question)
        if snapshot.status not in LIVE_STATUSES:
            raise SessionNotActive(f"Session is not active (status={snapshot.status}).")
        if not snapshot.full_text.strip():
            raise EmptyTranscript("No transcript available yet.")
        return self._open(
            snapshot.session_id,
            build_live_messages(snapshot.full_text, question),
            self._live_temperature,
        )

    def _open(self, session_id: str, messages: list[ChatMessage], temperature: float) -> AnswerStream:
        try:
            upstream = self._chat_model.stream_chat(
                messages, temperature=temperature, max_tokens=self._max_tokens
            )
        except ChatModelError as exc:
            logger.warning("answer open failed session=%s error=%s", session_id, exc.message)
            raise _generation_error(exc) from exc
        stream = AnswerStream(upstream, session_id=session_id, backend_name=self._chat_model.name())
        stream.prime()
        return stream


def _require_question(question: str) -> str:
    text = (question or "").strip()
    if not text:
        raise InvalidInput("Question is required.")
    return text
