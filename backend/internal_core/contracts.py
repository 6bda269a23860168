from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["active", "draining", "completed", "error"]


class TranscriptFragment(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    order: int = Field(ge=0)
    text: str
    timestamp: datetime


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    owner_id: str
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    updated_at: datetime
    title: Optional[str] = None
    calendar_event_id: Optional[str] = None
    fragments: List[TranscriptFragment] = Field(default_factory=list)
    full_text: str = ""
    summary: Optional[str] = None
    segments_in_flight: int = Field(default=0, ge=0)
    end_requested: bool = False
    error: Optional[str] = None


class SessionListItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    title: Optional[str] = None
    calendar_event_id: Optional[str] = None
    fragment_count: int = Field(default=0, ge=0)
    summary: Optional[str] = None


class SegmentResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    order: int = Field(ge=0)
    transcribed_text: str
    stored: bool
    status: SessionStatus


AuditEventType = Literal[
    "SESSION_CREATED",
    "SEGMENT_ACCEPTED",
    "SEGMENT_STORED",
    "SEGMENT_SKIPPED_EMPTY",
    "SEGMENT_FAILED",
    "LATE_FRAGMENT_REJECTED",
    "END_REQUESTED",
    "FINALIZE",
    "SUMMARY_DONE",
    "SUMMARY_FAILED",
    "SESSION_EXPIRED",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class MemoryItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    memory_id: str
    owner_id: str
    text: str
    created_at: datetime


class MemoryResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transcription: str
    memory: Optional[MemoryItem] = None
