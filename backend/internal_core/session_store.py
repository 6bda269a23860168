from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, List, Optional

from backend.session.assembler import TranscriptAssembler
from backend.session.drain_gate import DrainGate

from .contracts import AuditEvent, SessionListItem, SessionSnapshot, SessionStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """Mutable state of one recording session.

    Every field below `lock` is read and written only while holding `lock`.
    """

    session_id: str
    owner_id: str
    start_time: datetime
    title: Optional[str] = None
    calendar_event_id: Optional[str] = None
    lock: RLock = field(default_factory=RLock, repr=False)
    status: SessionStatus = "active"
    end_time: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utc_now)
    last_activity: float = field(default_factory=time.time)
    summary: Optional[str] = None
    error: Optional[str] = None
    transcript: TranscriptAssembler = field(default_factory=TranscriptAssembler, repr=False)
    gate: DrainGate = field(default_factory=DrainGate, repr=False)
    audit_events: List[AuditEvent] = field(default_factory=list, repr=False)

    def touch(self) -> None:
        self.updated_at = _utc_now()
        self.last_activity = time.time()

    def snapshot(self) -> SessionSnapshot:
        with self.lock:
            return SessionSnapshot(
                session_id=self.session_id,
                owner_id=self.owner_id,
                status=self.status,
                start_time=self.start_time,
                end_time=self.end_time,
                updated_at=self.updated_at,
                title=self.title,
                calendar_event_id=self.calendar_event_id,
                fragments=self.transcript.fragments,
                full_text=self.transcript.full_text,
                summary=self.summary,
                segments_in_flight=self.gate.in_flight,
                end_requested=self.gate.end_requested,
                error=self.error,
            )

    def list_item(self) -> SessionListItem:
        with self.lock:
            return SessionListItem(
                session_id=self.session_id,
                status=self.status,
                start_time=self.start_time,
                end_time=self.end_time,
                title=self.title,
                calendar_event_id=self.calendar_event_id,
                fragment_count=len(self.transcript),
                summary=self.summary,
            )


class InMemorySessionStore:
    """Session table keyed by id.

    The table lock covers insert and lookup only; session state is guarded by
    each record's own lock, so sessions never contend with each other.
    """

    def __init__(self, ttl_seconds: int):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._sessions: Dict[str, SessionRecord] = {}

    def create_session(
        self,
        owner_id: str,
        *,
        title: Optional[str] = None,
        calendar_event_id: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            session_id=uuid.uuid4().hex,
            owner_id=owner_id,
            start_time=_utc_now(),
            title=title,
            calendar_event_id=calendar_event_id,
        )
        with self._lock:
            self._sessions[record.session_id] = record
        return record

    def get_record(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._sessions.get(session_id)
        if record is None:
            raise KeyError(f"Unknown session_id: {session_id}")
        return record

    def list_records(self, owner_id: str) -> List[SessionRecord]:
        with self._lock:
            records = list(self._sessions.values())
        owned = [item for item in records if item.owner_id == owner_id]
        owned.sort(key=lambda item: item.start_time, reverse=True)
        return owned

    def stale_records(self, now: Optional[float] = None) -> List[SessionRecord]:
        """Active sessions idle past the TTL with nothing in flight."""
        if self._ttl_seconds <= 0:
            return []
        cutoff = (time.time() if now is None else now) - self._ttl_seconds
        with self._lock:
            records = list(self._sessions.values())
        stale: List[SessionRecord] = []
        for record in records:
            with record.lock:
                if (
                    record.status == "active"
                    and record.gate.in_flight == 0
                    and record.last_activity <= cutoff
                ):
                    stale.append(record)
        return stale
