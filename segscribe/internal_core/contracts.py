from __future__ import annotations

import time
import uuid
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

SegmentStatus = Literal["pending", "queued", "processing", "completed", "failed"]

TranscriptionSource = Literal["remote_whisper", "whisper_cpp", "mock", "silence"]


def _new_id() -> str:
    return uuid.uuid4().hex


class SessionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    session_id: str = Field(default_factory=_new_id, min_length=1)
    title: str
    created_at: float = Field(default_factory=time.time)
    audio_path: str
    error: Optional[str] = None


class SegmentRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    segment_id: str = Field(default_factory=_new_id, min_length=1)
    # Back-reference only; the session owns its segments.
    session_id: Optional[str] = None
    index: int = Field(ge=0)
    start_sec: float = Field(ge=0.0)
    end_sec: float = Field(ge=0.0)
    transcription: Optional[str] = None
    status: SegmentStatus = "pending"
    retry_count: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    audio_path: str
    provider_used: Optional[str] = None
    confidence: Optional[float] = None
    last_error: Optional[str] = None

    @model_validator(mode="after")
    def _validate_window(self) -> "SegmentRecord":
        if self.end_sec <= self.start_sec:
            raise ValueError("SegmentRecord.end_sec must be > SegmentRecord.start_sec")
        return self


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    segment_id: str
    text: str
    confidence: Optional[float] = None
    source: TranscriptionSource


AuditEventType = Literal[
    "SESSION_CREATED",
    "SEGMENT_WRITTEN",
    "SEGMENTATION_FAILED",
    "SEGMENT_QUEUED",
    "SEGMENT_DISPATCHED",
    "SEGMENT_COMPLETED",
    "SEGMENT_RETRY_SCHEDULED",
    "SEGMENT_FAILED",
    "FALLBACK_ENGAGED",
    "PERSIST_FAILED",
    "ARTIFACT_RECLAIMED",
    "SESSION_DESTROYED",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class OrchestratorStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fallback_mode: bool
    consecutive_failures: int
    connected: bool
    queued_segments: int
    in_flight_segments: int
    scheduled_retries: int
    working_set: int
