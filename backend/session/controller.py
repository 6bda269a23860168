from __future__ import annotations

"""
Session lifecycle and per-segment pipeline.

Design intent:
- Hold a session's lock only for state transitions, never across blob,
  normalization or transcription work.
- Decrement, check and finalize in one critical section so exactly one
  caller observes the session becoming complete.
- Run the summary outside the lock; its failure never affects the session.
"""

import datetime as _dt
import logging
import time
from typing import List, Optional

from backend.internal_core import audit
from backend.internal_core.asr.base import TranscriptionProvider
from backend.internal_core.audio_utils import AudioNormalizer, resolve_segment_suffix
from backend.internal_core.blob_store import BlobStore
from backend.internal_core.contracts import (
    AuditEvent,
    SegmentResult,
    SessionListItem,
    SessionSnapshot,
    SessionStatus,
)
from backend.internal_core.errors import (
    AlreadyCompleted,
    Forbidden,
    InvalidInput,
    SessionNotActive,
    SessionNotFound,
)
from backend.internal_core.pipeline import AudioTextPipeline, pipeline_error
from backend.internal_core.session_store import InMemorySessionStore, SessionRecord

from .summary import SessionSummarizer

logger = logging.getLogger(__name__)


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class SessionController:
    def __init__(
        self,
        store: InMemorySessionStore,
        normalizer: AudioNormalizer,
        transcriber: TranscriptionProvider,
        blob_store: BlobStore,
        summarizer: Optional[SessionSummarizer] = None,
        *,
        language: str = "en",
        asr_timeout_sec: int = 60,
        silence_rms: float = 0.0,
        max_segment_bytes: int = 25 * 1024 * 1024,
    ):
        self._store = store
        self._pipeline = AudioTextPipeline(
            normalizer,
            transcriber,
            blob_store,
            language=language,
            asr_timeout_sec=asr_timeout_sec,
            silence_rms=silence_rms,
        )
        self._summarizer = summarizer
        self._max_segment_bytes = int(max_segment_bytes)

    # Lifecycle

    def start_session(
        self,
        owner_id: str,
        *,
        title: Optional[str] = None,
        calendar_event_id: Optional[str] = None,
    ) -> SessionSnapshot:
        self.expire_stale_sessions()
        record = self._store.create_session(owner_id, title=title, calendar_event_id=calendar_event_id)
        audit.log_event(record, "SESSION_CREATED", "SESSION_START", f"owner={owner_id}")
        logger.info("session started session=%s owner=%s", record.session_id, owner_id)
        return record.snapshot()

    def submit_segment(
        self,
        session_id: str,
        owner_id: str,
        data: bytes,
        filename: Optional[str] = None,
    ) -> SegmentResult:
        record = self._authorize(session_id, owner_id)
        with record.lock:
            if record.status != "active":
                raise SessionNotActive(f"Session is not active (status={record.status}).")
            if not data:
                raise InvalidInput("Audio segment body is empty.")
            if len(data) > self._max_segment_bytes:
                raise InvalidInput(
                    f"Audio segment too large ({len(data)} bytes, max {self._max_segment_bytes})."
                )
            order = record.gate.accept()
            record.touch()
        audit.log_event(record, "SEGMENT_ACCEPTED", "SEGMENT_IN", f"order={order} bytes={len(data)}")
        logger.info("segment accepted session=%s order=%d bytes=%d", session_id, order, len(data))

        start = time.monotonic()
        try:
            text = self._pipeline.run(
                f"{session_id}/{order:06d}{resolve_segment_suffix(filename)}",
                data,
                filename,
                prefix=f"{session_id}_{order}",
            )
        except Exception as exc:
            error = pipeline_error(exc)
            audit.log_event(
                record,
                "SEGMENT_FAILED",
                error.code,
                f"order={order} {type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(start),
            )
            self._settle_segment(record, order, None)
            raise error from exc

        stored, status = self._settle_segment(record, order, text, duration_ms=_elapsed_ms(start))
        return SegmentResult(
            session_id=session_id,
            order=order,
            transcribed_text=text,
            stored=stored,
            status=status,
        )

    def request_end(self, session_id: str, owner_id: str) -> SessionStatus:
        record = self._authorize(session_id, owner_id)
        with record.lock:
            if record.status == "error":
                raise SessionNotActive(f"Session is not active (status={record.status}).")
            if record.status == "completed" or record.gate.end_requested:
                raise AlreadyCompleted(f"Session end was already requested (status={record.status}).")
            record.end_time = _utc_now()
            record.touch()
            released = record.gate.request_end()
            if released:
                self._mark_completed(record)
            else:
                record.status = "draining"
            status = record.status
            in_flight = record.gate.in_flight
        audit.log_event(record, "END_REQUESTED", "END", f"status={status} in_flight={in_flight}")
        logger.info("end requested session=%s status=%s in_flight=%d", session_id, status, in_flight)
        if released:
            self._finalize_summary(record)
        return status

    def expire_stale_sessions(self, now: Optional[float] = None) -> int:
        expired = 0
        for record in self._store.stale_records(now):
            with record.lock:
                # Re-check: a segment may have been accepted since the scan.
                if record.status != "active" or record.gate.in_flight > 0:
                    continue
                record.status = "error"
                record.error = "abandoned"
                record.touch()
            audit.log_event(record, "SESSION_EXPIRED", "TTL", "no activity before session TTL")
            logger.info("session expired session=%s", record.session_id)
            expired += 1
        return expired

    # Reads

    def get_session(self, session_id: str, owner_id: str) -> SessionSnapshot:
        return self._authorize(session_id, owner_id).snapshot()

    def list_sessions(self, owner_id: str) -> List[SessionListItem]:
        return [record.list_item() for record in self._store.list_records(owner_id)]

    def get_audit(self, session_id: str, owner_id: str) -> List[AuditEvent]:
        record = self._authorize(session_id, owner_id)
        with record.lock:
            return list(record.audit_events)

    # Internals

    def _authorize(self, session_id: str, owner_id: str) -> SessionRecord:
        try:
            record = self._store.get_record(session_id)
        except KeyError:
            raise SessionNotFound("Session not found.") from None
        if record.owner_id != owner_id:
            raise Forbidden("Session belongs to another user.")
        return record

    def _settle_segment(
        self,
        record: SessionRecord,
        order: int,
        text: Optional[str],
        duration_ms: Optional[int] = None,
    ) -> tuple[bool, SessionStatus]:
        """Store the fragment (when non-blank) and release the segment's gate slot."""
        stored = False
        with record.lock:
            if text is not None and text.strip():
                if record.status == "completed":
                    audit.log_event(record, "LATE_FRAGMENT_REJECTED", "LATE", f"order={order}")
                    logger.warning("late fragment rejected session=%s order=%d", record.session_id, order)
                else:
                    record.transcript.append_fragment(order, text, _utc_now())
                    stored = True
                    audit.log_event(
                        record,
                        "SEGMENT_STORED",
                        "SEGMENT_OK",
                        f"order={order} chars={len(text)}",
                        duration_ms=duration_ms,
                    )
            elif text is not None:
                audit.log_event(
                    record, "SEGMENT_SKIPPED_EMPTY", "SEGMENT_EMPTY", f"order={order}", duration_ms=duration_ms
                )
            released = record.gate.leave()
            if released:
                self._mark_completed(record)
            record.touch()
            status = record.status
        if released:
            self._finalize_summary(record)
        return stored, status

    def _mark_completed(self, record: SessionRecord) -> None:
        # Caller holds record.lock.
        record.status = "completed"
        if record.end_time is None:
            record.end_time = _utc_now()
        audit.log_event(record, "FINALIZE", "COMPLETED", f"fragments={len(record.transcript)}")
        logger.info("session completed session=%s fragments=%d", record.session_id, len(record.transcript))

    def _finalize_summary(self, record: SessionRecord) -> None:
        if self._summarizer is None:
            return
        with record.lock:
            full_text = record.transcript.full_text
        if not full_text.strip():
            return

        start = time.monotonic()
        try:
            summary = self._summarizer.summarize(full_text)
        except Exception as exc:
            logger.warning("summary failed session=%s error=%s", record.session_id, exc)
            audit.log_event(
                record, "SUMMARY_FAILED", "SUMMARY_ERROR", f"{type(exc).__name__}: {exc}", duration_ms=_elapsed_ms(start)
            )
            return
        if summary is None:
            audit.log_event(record, "SUMMARY_FAILED", "SUMMARY_EMPTY", "", duration_ms=_elapsed_ms(start))
            return

        with record.lock:
            record.summary = summary
            record.touch()
        audit.log_event(record, "SUMMARY_DONE", "SUMMARY_OK", f"chars={len(summary)}", duration_ms=_elapsed_ms(start))
        logger.info("summary stored session=%s chars=%d", record.session_id, len(summary))
