from __future__ import annotations

import datetime as _dt
from typing import Any, Optional

from .contracts import AuditEvent, AuditEventType, SegmentRecord
from .segment_store import InMemorySegmentStore

_MAX_DETAIL_CHARS = 200
_REDACTED = "[transcript]"


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str, transcript: Optional[str] = None) -> str:
    # Audit details carry metadata only: never transcript text or audio bytes.
    detail = (detail or "").replace("\n", " ").strip()
    if transcript and transcript.strip() and transcript.strip() in detail:
        detail = detail.replace(transcript.strip(), _REDACTED)
    if len(detail) > _MAX_DETAIL_CHARS:
        detail = detail[:_MAX_DETAIL_CHARS] + "..."
    return detail


def segment_detail(segment: SegmentRecord, **fields: Any) -> str:
    """``index=<n>`` followed by ``key=value`` pairs in call order."""
    parts = [f"index={segment.index}"]
    parts.extend(f"{key}={value}" for key, value in fields.items())
    return " ".join(parts)


def log_event(
    store: InMemorySegmentStore,
    session_id: Optional[str],
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
    transcript: Optional[str] = None,
) -> None:
    # Orphan segments have no session trail to write to.
    if not session_id:
        return
    event = AuditEvent(
        ts_iso=_ts_iso(),
        session_id=session_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail, transcript),
        duration_ms=duration_ms,
    )
    store.append_audit_event(session_id, event)


def log_segment_event(
    store: InMemorySegmentStore,
    segment: SegmentRecord,
    event_type: AuditEventType,
    code: str,
    message: str = "",
    duration_ms: Optional[int] = None,
    **fields: Any,
) -> None:
    """
    Record a lifecycle event for one segment.

    The detail always leads with the segment index so a session's trail can be
    read per segment. Any occurrence of the segment's transcription in the
    detail (e.g. echoed back inside a provider error) is redacted.
    """
    detail = segment_detail(segment, **fields)
    if message:
        detail = f"{detail} {message}"
    log_event(
        store,
        segment.session_id,
        event_type,
        code,
        detail,
        duration_ms=duration_ms,
        transcript=segment.transcription,
    )
