from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import ValidationError

from .contracts import AuditEvent, SegmentRecord, SessionRecord

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", SessionRecord, SegmentRecord)


class StoreIOError(OSError):
    """Record store could not read or write its backing file."""


class ConstraintError(ValueError):
    """Insert would violate a uniqueness or ownership constraint."""


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception:
        logger.warning("could not remove artifact %s", path)


class InMemorySegmentStore:
    """
    Record store for sessions and their segments.

    Records are held in memory and mutated in place by their owners; ``save()``
    is the commit point and, when ``persist_path`` is set, writes a JSON snapshot
    that is reloaded on construction.
    """

    def __init__(self, persist_path: Optional[Path] = None):
        self._persist_path = persist_path
        self._lock = RLock()
        self._sessions: Dict[str, SessionRecord] = {}
        self._segments: Dict[str, SegmentRecord] = {}
        self._audit_events: Dict[str, List[AuditEvent]] = {}
        self._save_count = 0
        if persist_path is not None and persist_path.exists():
            self._load(persist_path)

    @property
    def save_count(self) -> int:
        return self._save_count

    def insert(self, record: Union[SessionRecord, SegmentRecord]) -> None:
        with self._lock:
            if isinstance(record, SessionRecord):
                if record.session_id in self._sessions:
                    raise ConstraintError(f"Duplicate session_id: {record.session_id}")
                self._sessions[record.session_id] = record
                self._audit_events.setdefault(record.session_id, [])
                return
            if isinstance(record, SegmentRecord):
                if record.segment_id in self._segments:
                    raise ConstraintError(f"Duplicate segment_id: {record.segment_id}")
                if record.session_id is not None and record.session_id not in self._sessions:
                    raise ConstraintError(
                        f"Segment {record.segment_id} references unknown session {record.session_id}"
                    )
                self._segments[record.segment_id] = record
                return
        raise ConstraintError(f"Unsupported record type: {type(record).__name__}")

    def fetch(
        self,
        record_type: Type[RecordT],
        predicate: Optional[Callable[[RecordT], bool]] = None,
    ) -> List[RecordT]:
        with self._lock:
            if record_type is SessionRecord:
                records = list(self._sessions.values())
            elif record_type is SegmentRecord:
                records = list(self._segments.values())
            else:
                raise ConstraintError(f"Unsupported record type: {record_type.__name__}")
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def get_session(self, session_id: str) -> SessionRecord:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"Unknown session_id: {session_id}")
            return session

    def get_segment(self, segment_id: str) -> SegmentRecord:
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise KeyError(f"Unknown segment_id: {segment_id}")
            return segment

    def segments_for_session(self, session_id: str) -> List[SegmentRecord]:
        segments = self.fetch(SegmentRecord, lambda s: s.session_id == session_id)
        return sorted(segments, key=lambda s: (s.start_sec, s.index))

    def save(self) -> None:
        with self._lock:
            if self._persist_path is not None:
                self._write_snapshot(self._persist_path)
            self._save_count += 1

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._audit_events.setdefault(session_id, []).append(event)

    def audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit_events.get(session_id, []))

    def delete_session(self, session_id: str) -> List[SegmentRecord]:
        """Remove a session and every segment it owns, including their artifacts."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                raise KeyError(f"Unknown session_id: {session_id}")
            owned = [s for s in self._segments.values() if s.session_id == session_id]
            for segment in owned:
                del self._segments[segment.segment_id]

        for segment in owned:
            _safe_unlink(Path(segment.audio_path))
        return owned

    def _write_snapshot(self, path: Path) -> None:
        payload = {
            "sessions": [s.model_dump() for s in self._sessions.values()],
            "segments": [s.model_dump() for s in self._segments.values()],
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".store_", suffix=".json", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StoreIOError(f"Failed to write store snapshot {path}: {e}") from e

    def _load(self, path: Path) -> None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreIOError(f"Failed to read store snapshot {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StoreIOError(f"Corrupt store snapshot {path}: {e}") from e
        try:
            for item in payload.get("sessions", []):
                self.insert(SessionRecord.model_validate(item))
            for item in payload.get("segments", []):
                self.insert(SegmentRecord.model_validate(item))
        except ValidationError as e:
            raise ConstraintError(f"Invalid record in store snapshot {path}: {e}") from e
