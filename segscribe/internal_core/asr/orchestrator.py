from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .. import audit
from ..audio_utils import (
    AudioDataError,
    AudioFormatError,
    ensure_wav,
    has_voice,
    load_wav_float32,
    preprocess_audio,
    write_wav16k_mono_float32,
)
from ..config import TranscriptionConfig
from ..contracts import OrchestratorStatus, SegmentRecord, SegmentStatus, SessionRecord, TranscriptionResult
from ..network import NetworkMonitor
from ..segment_store import ConstraintError, InMemorySegmentStore, StoreIOError, _safe_unlink
from ..segmenter import SegmentationError, iter_segments
from .base import ArtifactIOError, ASRError, EngineUnavailableError, TranscriptionProvider

logger = logging.getLogger(__name__)


_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"queued", "processing", "failed"}),
    "queued": frozenset({"processing"}),
    "processing": frozenset({"completed", "pending"}),
    "failed": frozenset({"processing"}),
    "completed": frozenset(),
}

# Failures that never reached a provider; they fail the segment outright.
_INPUT_ERRORS = (AudioFormatError, AudioDataError, ArtifactIOError)


class InvalidTransitionError(RuntimeError):
    def __init__(self, segment_id: str, current: str, target: str):
        super().__init__(f"segment {segment_id}: illegal transition {current} -> {target}")
        self.segment_id = segment_id
        self.current = current
        self.target = target


def transition(segment: SegmentRecord, target: SegmentStatus) -> None:
    allowed = _TRANSITIONS.get(segment.status, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(segment.segment_id, segment.status, target)
    segment.status = target


class RetryHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule(self, delay_sec: float, callback: Callable[[], None]) -> RetryHandle: ...


class TimerScheduler:
    """Backoff timers on daemon ``threading.Timer`` threads."""

    def schedule(self, delay_sec: float, callback: Callable[[], None]) -> RetryHandle:
        timer = threading.Timer(delay_sec, callback)
        timer.daemon = True
        timer.start()
        return timer


def backoff_delay(retry_count: int) -> float:
    return float(2 ** retry_count)


class TranscriptionOrchestrator:
    """
    Owns the segment lifecycle: routing, retry/backoff, fallback and re-queueing.

    Runtime state (pending queue, breaker counter, fallback flag, connectivity,
    in-flight set, retry handles, working set) is only touched from the control
    context, a single-thread executor. Provider calls and segmentation run on
    the worker pool and report back by submitting into the control context.

    Public mutators return a Future resolved by the control context. ``status()``
    blocks on that future, so it must not be called from inside the control
    context.
    """

    def __init__(
        self,
        store: InMemorySegmentStore,
        cfg: TranscriptionConfig,
        remote: TranscriptionProvider,
        local: Optional[TranscriptionProvider] = None,
        network: Optional[NetworkMonitor] = None,
        control_executor: Optional[Executor] = None,
        worker_executor: Optional[Executor] = None,
        scheduler: Optional[Scheduler] = None,
        tmp_dir: Optional[Path] = None,
    ):
        self._store = store
        self._cfg = cfg
        self._remote = remote
        self._local = local
        self._network = network
        self._tmp_dir = tmp_dir if tmp_dir is not None else cfg.tmp_dir_path()

        self._owned_executors: List[Executor] = []
        if control_executor is None:
            control_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="segscribe-control")
            self._owned_executors.append(control_executor)
        if worker_executor is None:
            worker_executor = ThreadPoolExecutor(
                max_workers=cfg.SCRIBE_BATCH_SIZE, thread_name_prefix="segscribe-worker"
            )
            self._owned_executors.append(worker_executor)
        self._control = control_executor
        self._workers = worker_executor
        self._scheduler: Scheduler = scheduler if scheduler is not None else TimerScheduler()

        self._queue: List[str] = []
        self._working_set: Dict[str, SegmentRecord] = {}
        self._in_flight: set[str] = set()
        self._retry_handles: Dict[str, Tuple[int, RetryHandle]] = {}
        self._kept_artifacts: set[str] = set()
        self._tokens = itertools.count(1)
        self._consecutive_failures = 0
        self._fallback_mode = False
        self._connected = network.is_connected if network is not None else True

        self._unsubscribe: Optional[Callable[[], None]] = None
        if network is not None:
            self._unsubscribe = network.subscribe(self.on_connectivity_changed)

    # ----------------------------------------------------------------- public

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    @property
    def store(self) -> InMemorySegmentStore:
        return self._store

    @property
    def network(self) -> Optional[NetworkMonitor]:
        return self._network

    def enqueue(self, segment: SegmentRecord) -> Future:
        """Admit a segment (inserting it into the store if needed) and dispatch it."""
        return self._submit_control(self._enqueue, segment)

    def on_connectivity_changed(self, connected: bool) -> Future:
        return self._submit_control(self._on_connectivity_changed, bool(connected))

    def retry_failed(self) -> Future:
        return self._submit_control(self._retry_failed)

    def clear_completed(self) -> Future:
        return self._submit_control(self._clear_completed)

    def resume_from_store(self) -> Future:
        return self._submit_control(self._resume_from_store)

    def delete_session(self, session_id: str) -> Future:
        return self._submit_control(self._delete_session, session_id)

    def status(self) -> OrchestratorStatus:
        return self._submit_control(self._status).result()

    def full_transcription(self, session_id: str) -> str:
        """Completed segments' text ordered by start time, joined with single spaces."""
        self._store.get_session(session_id)
        parts = [
            seg.transcription
            for seg in self._store.segments_for_session(session_id)
            if seg.status == "completed" and seg.transcription
        ]
        return " ".join(parts)

    def ingest_recording(self, title: str, audio_path: Path) -> Tuple[SessionRecord, Future]:
        """
        Create a session for a finished recording and segment it in the background.

        Segments are admitted one by one as soon as their slice is written. The
        returned future resolves to the number of segments written, or raises
        the ``SegmentationError`` that stopped the run.
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(f"recording not found: {audio_path}")
        session = SessionRecord(title=title, audio_path=str(audio_path))
        self._store.insert(session)
        audit.log_event(self._store, session.session_id, "SESSION_CREATED", "OK", f"title_len={len(title)}")
        self._save_or_report(session.session_id, None)
        logger.info("session created session=%s recording=%s", session.session_id, audio_path.name)
        return session, self._workers.submit(self._segment_recording, session)

    def shutdown(self, wait: bool = True) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for _, handle in list(self._retry_handles.values()):
            handle.cancel()
        self._retry_handles.clear()
        for executor in self._owned_executors:
            executor.shutdown(wait=wait)

    # ------------------------------------------------------- control context

    def _submit_control(self, fn: Callable[..., Any], *args: Any) -> Future:
        fut = self._control.submit(fn, *args)
        fut.add_done_callback(partial(self._log_control_failure, getattr(fn, "__name__", "task")))
        return fut

    def _submit_control_quietly(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            self._submit_control(fn, *args)
        except RuntimeError:
            logger.warning("control context is shut down; dropped %s", getattr(fn, "__name__", "task"))

    @staticmethod
    def _log_control_failure(name: str, fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("orchestrator task %s failed: %s", name, exc, exc_info=exc)

    def _enqueue(self, segment: SegmentRecord) -> None:
        try:
            segment = self._store.get_segment(segment.segment_id)
        except KeyError:
            try:
                self._store.insert(segment)
            except ConstraintError:
                # Session was deleted before this segment was admitted.
                _safe_unlink(Path(segment.audio_path))
                logger.info(
                    "segment dropped; session gone session=%s segment=%s", segment.session_id, segment.segment_id
                )
                return
            self._persist(segment.session_id, segment)
        self._working_set.setdefault(segment.segment_id, segment)
        self._dispatch(segment.segment_id)

    def _select_provider(self) -> Optional[TranscriptionProvider]:
        if self._fallback_mode and self._local_usable():
            return self._local
        if self._connected:
            return self._remote
        return None

    def _local_usable(self) -> bool:
        return (
            self._cfg.SCRIBE_LOCAL_FALLBACK_ENABLED
            and self._local is not None
            and self._local.is_available()
        )

    def _dispatch(self, segment_id: str) -> None:
        segment = self._working_set.get(segment_id)
        if segment is None or segment_id in self._in_flight or segment.status == "completed":
            return
        provider = self._select_provider()
        if provider is None:
            self._park(segment)
            return
        self._start(segment, provider, last_resort=False)

    def _park(self, segment: SegmentRecord) -> None:
        # Failed segments keep their status while waiting; the drain moves them on.
        if segment.status == "pending":
            transition(segment, "queued")
        if segment.segment_id not in self._queue:
            self._queue.append(segment.segment_id)
        audit.log_segment_event(self._store, segment, "SEGMENT_QUEUED", "OFFLINE")
        logger.info("segment queued until network returns segment=%s", segment.segment_id)

    def _start(self, segment: SegmentRecord, provider: TranscriptionProvider, last_resort: bool) -> None:
        transition(segment, "processing")
        self._in_flight.add(segment.segment_id)
        via_local = provider is self._local
        audit.log_segment_event(
            self._store,
            segment,
            "SEGMENT_DISPATCHED",
            "LAST_RESORT" if last_resort else "OK",
            provider=provider.name(),
            retry_count=segment.retry_count,
        )
        started = time.monotonic()
        fut = self._workers.submit(self._run_provider, provider, segment.segment_id, segment.audio_path)
        fut.add_done_callback(
            partial(self._report_back, segment.segment_id, provider.name(), via_local, last_resort, started)
        )

    def _report_back(
        self,
        segment_id: str,
        provider_name: str,
        via_local: bool,
        last_resort: bool,
        started: float,
        fut: Future,
    ) -> None:
        self._submit_control_quietly(
            self._on_result, segment_id, provider_name, via_local, last_resort, started, fut
        )

    def _on_result(
        self,
        segment_id: str,
        provider_name: str,
        via_local: bool,
        last_resort: bool,
        started: float,
        fut: Future,
    ) -> None:
        self._in_flight.discard(segment_id)
        segment = self._working_set.get(segment_id)
        if segment is None:
            logger.debug("result for removed segment=%s ignored", segment_id)
            return
        if fut.cancelled():
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        exc = fut.exception()
        if exc is None:
            self._complete(segment, fut.result(), duration_ms)
        else:
            self._handle_failure(segment, exc, provider_name, via_local, last_resort, duration_ms)

    def _complete(self, segment: SegmentRecord, result: TranscriptionResult, duration_ms: int) -> None:
        if result.source != "silence":
            self._consecutive_failures = 0
        transition(segment, "completed")
        segment.transcription = result.text
        segment.provider_used = result.source
        segment.confidence = result.confidence
        segment.last_error = None
        self._cancel_retry(segment.segment_id)

        try:
            self._store.save()
        except StoreIOError as e:
            segment.last_error = f"PERSIST_FAILED: {e}"
            self._kept_artifacts.add(segment.segment_id)
            audit.log_segment_event(self._store, segment, "PERSIST_FAILED", "STORE_IO", str(e))
            logger.error("completed segment not persisted; keeping artifact segment=%s: %s", segment.segment_id, e)
            return

        audit.log_segment_event(
            self._store,
            segment,
            "SEGMENT_COMPLETED",
            "OK",
            duration_ms=duration_ms,
            source=result.source,
            chars=len(result.text),
        )
        logger.info("segment completed segment=%s source=%s", segment.segment_id, result.source)
        _safe_unlink(Path(segment.audio_path))
        self._reclaim_kept_artifacts()

    def _handle_failure(
        self,
        segment: SegmentRecord,
        exc: BaseException,
        provider_name: str,
        via_local: bool,
        last_resort: bool,
        duration_ms: int,
    ) -> None:
        if isinstance(exc, ASRError):
            code, message, retryable = exc.code, exc.message, exc.retryable
        elif isinstance(exc, (AudioFormatError, AudioDataError)):
            code, message, retryable = "AUDIO_INVALID", str(exc), False
        else:
            logger.error("unexpected provider failure segment=%s", segment.segment_id, exc_info=exc)
            code, message, retryable = "PROVIDER_UNEXPECTED", str(exc) or type(exc).__name__, True

        segment.last_error = f"{code}: {message}"
        transition(segment, "pending")

        if isinstance(exc, _INPUT_ERRORS):
            self._fail(segment, code, message)
            return

        self._record_provider_failure(segment, provider_name)

        if last_resort:
            self._fail(segment, code, message)
            return

        if retryable:
            segment.retry_count += 1
            if segment.retry_count < self._cfg.SCRIBE_MAX_RETRIES:
                delay = backoff_delay(segment.retry_count)
                self._schedule_retry(segment, delay)
                audit.log_segment_event(
                    self._store,
                    segment,
                    "SEGMENT_RETRY_SCHEDULED",
                    code,
                    duration_ms=duration_ms,
                    retry_count=segment.retry_count,
                    delay_s=f"{delay:g}",
                )
                logger.warning(
                    "segment failed on %s, retry %d in %gs segment=%s: %s",
                    provider_name,
                    segment.retry_count,
                    delay,
                    segment.segment_id,
                    code,
                )
                return

        self._fail(segment, code, message)
        if not via_local and not isinstance(exc, EngineUnavailableError) and self._local_usable():
            logger.info("last-resort local attempt segment=%s", segment.segment_id)
            self._start(segment, self._local, last_resort=True)

    def _record_provider_failure(self, segment: SegmentRecord, provider_name: str) -> None:
        self._consecutive_failures += 1
        if not self._fallback_mode and self._consecutive_failures >= self._cfg.SCRIBE_FALLBACK_THRESHOLD:
            self._fallback_mode = True
            audit.log_event(
                self._store,
                segment.session_id,
                "FALLBACK_ENGAGED",
                "BREAKER_OPEN",
                f"consecutive_failures={self._consecutive_failures} last_provider={provider_name}",
            )
            logger.warning(
                "fallback mode engaged after %d consecutive failures", self._consecutive_failures
            )

    def _fail(self, segment: SegmentRecord, code: str, message: str) -> None:
        transition(segment, "failed")
        self._cancel_retry(segment.segment_id)
        audit.log_segment_event(
            self._store, segment, "SEGMENT_FAILED", code, message, retry_count=segment.retry_count
        )
        logger.error("segment failed segment=%s %s: %s", segment.segment_id, code, message)
        self._persist(segment.session_id, segment)

    def _schedule_retry(self, segment: SegmentRecord, delay_sec: float) -> None:
        self._cancel_retry(segment.segment_id)
        token = next(self._tokens)
        handle = self._scheduler.schedule(
            delay_sec,
            partial(self._submit_control_quietly, self._on_retry_due, segment.segment_id, token),
        )
        self._retry_handles[segment.segment_id] = (token, handle)

    def _cancel_retry(self, segment_id: str) -> None:
        entry = self._retry_handles.pop(segment_id, None)
        if entry is not None:
            entry[1].cancel()

    def _on_retry_due(self, segment_id: str, token: int) -> None:
        entry = self._retry_handles.get(segment_id)
        if entry is None or entry[0] != token:
            return
        del self._retry_handles[segment_id]
        self._dispatch(segment_id)

    def _on_connectivity_changed(self, connected: bool) -> int:
        was_connected = self._connected
        self._connected = connected
        if not connected or was_connected:
            return 0

        snapshot = list(self._queue)
        self._queue.clear()
        drained = 0
        for segment_id in snapshot:
            segment = self._working_set.get(segment_id)
            if segment is None or segment_id in self._in_flight or segment.status == "completed":
                continue
            self._dispatch(segment_id)
            drained += 1
        if drained:
            logger.info("network restored; drained %d queued segment(s)", drained)
        return drained

    def _retry_failed(self) -> int:
        failed = [
            s for s in self._working_set.values()
            if s.status == "failed" and s.segment_id not in self._in_flight
        ]
        for segment in failed:
            self._cancel_retry(segment.segment_id)
            segment.retry_count = 0
            self._dispatch(segment.segment_id)
        if failed:
            logger.info("manual retry of %d failed segment(s)", len(failed))
        return len(failed)

    def _clear_completed(self) -> int:
        completed = [sid for sid, s in self._working_set.items() if s.status == "completed"]
        for segment_id in completed:
            del self._working_set[segment_id]
        return len(completed)

    def _resume_from_store(self) -> int:
        resumed = 0
        for segment in sorted(self._store.fetch(SegmentRecord), key=lambda s: (s.created_at, s.index)):
            if segment.status == "completed":
                continue
            segment = self._working_set.setdefault(segment.segment_id, segment)
            if segment.segment_id in self._in_flight:
                continue
            if segment.status == "processing":
                # Interrupted by a restart; the call never reported back.
                transition(segment, "pending")
            if segment.status in ("pending", "queued"):
                self._dispatch(segment.segment_id)
                resumed += 1
        logger.info("resumed %d unfinished segment(s) from store", resumed)
        return resumed

    def _delete_session(self, session_id: str) -> int:
        removed = self._store.delete_session(session_id)
        removed_ids = {s.segment_id for s in removed}
        for segment_id in removed_ids:
            self._cancel_retry(segment_id)
            self._working_set.pop(segment_id, None)
        self._queue = [sid for sid in self._queue if sid not in removed_ids]
        audit.log_event(self._store, session_id, "SESSION_DESTROYED", "OK", f"segments={len(removed)}")
        self._persist(session_id, None)
        logger.info("session deleted session=%s segments=%d", session_id, len(removed))
        return len(removed)

    def _status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            fallback_mode=self._fallback_mode,
            consecutive_failures=self._consecutive_failures,
            connected=self._connected,
            queued_segments=len(self._queue),
            in_flight_segments=len(self._in_flight),
            scheduled_retries=len(self._retry_handles),
            working_set=len(self._working_set),
        )

    def _save_or_report(self, session_id: Optional[str], segment: Optional[SegmentRecord]) -> bool:
        try:
            self._store.save()
        except StoreIOError as e:
            if segment is not None:
                segment.last_error = f"PERSIST_FAILED: {e}"
            audit.log_event(self._store, session_id, "PERSIST_FAILED", "STORE_IO", str(e))
            logger.error("store save failed session=%s: %s", session_id, e)
            return False
        return True

    def _persist(self, session_id: Optional[str], segment: Optional[SegmentRecord]) -> None:
        if self._save_or_report(session_id, segment):
            self._reclaim_kept_artifacts()

    def _reclaim_kept_artifacts(self) -> None:
        """Remove artifacts of completed segments once a later save has captured them."""
        for segment_id in sorted(self._kept_artifacts):
            try:
                segment = self._store.get_segment(segment_id)
            except KeyError:
                continue
            _safe_unlink(Path(segment.audio_path))
            audit.log_segment_event(self._store, segment, "ARTIFACT_RECLAIMED", "OK")
            logger.info("kept artifact removed after store recovered segment=%s", segment_id)
        self._kept_artifacts.clear()

    # ------------------------------------------------------------ worker pool

    def _run_provider(self, provider: TranscriptionProvider, segment_id: str, audio_path: str) -> TranscriptionResult:
        path = Path(audio_path)
        if not (self._cfg.SCRIBE_VAD_ENABLED or self._cfg.SCRIBE_USE_PREPROCESSING):
            return provider.transcribe(str(path), segment_id)

        try:
            audio, rate = load_wav_float32(path)
        except OSError as e:
            raise ArtifactIOError("ARTIFACT_READ_FAILED", f"{path}: {e}", provider.name()) from e

        if self._cfg.SCRIBE_VAD_ENABLED and not has_voice(audio, self._cfg.SCRIBE_VAD_RMS_THRESHOLD):
            return TranscriptionResult(segment_id=segment_id, text="", confidence=None, source="silence")

        if not self._cfg.SCRIBE_USE_PREPROCESSING:
            return provider.transcribe(str(path), segment_id)

        processed = preprocess_audio(audio, rate)
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        pre_path = self._tmp_dir / f"{path.stem}_pre.wav"
        try:
            write_wav16k_mono_float32(pre_path, processed)
        except OSError as e:
            _safe_unlink(pre_path)
            raise ArtifactIOError("PREPROCESS_WRITE_FAILED", f"{pre_path}: {e}", provider.name()) from e
        try:
            return provider.transcribe(str(pre_path), segment_id)
        finally:
            _safe_unlink(pre_path)

    def _segment_recording(self, session: SessionRecord) -> int:
        written = 0
        source = Path(session.audio_path)
        wav_path = source
        out_dir = self._tmp_dir / "segments"
        try:
            try:
                wav_path = ensure_wav(source, self._tmp_dir / "converted", session.session_id)
            except (AudioFormatError, OSError) as e:
                raise SegmentationError(f"Cannot decode recording {source.name}: {e}") from e
            for segment in iter_segments(
                wav_path,
                session.session_id,
                out_dir,
                self._cfg.SCRIBE_SEGMENT_SECONDS,
                session_id=session.session_id,
            ):
                try:
                    self._store.insert(segment)
                except ConstraintError:
                    # Session was deleted while its recording was still being cut.
                    _safe_unlink(Path(segment.audio_path))
                    logger.info("segmentation stopped; session gone session=%s", session.session_id)
                    return written
                written += 1
                audit.log_segment_event(
                    self._store,
                    segment,
                    "SEGMENT_WRITTEN",
                    "OK",
                    window=f"{segment.start_sec:.3f}-{segment.end_sec:.3f}",
                )
                self._save_or_report(session.session_id, segment)
                self._submit_control_quietly(self._enqueue, segment)
        except SegmentationError as e:
            session.error = str(e)
            audit.log_event(self._store, session.session_id, "SEGMENTATION_FAILED", "SEGMENT_WRITE", str(e))
            logger.error(
                "segmentation failed session=%s after %d segment(s): %s",
                session.session_id,
                e.segments_written,
                e,
            )
            self._save_or_report(session.session_id, None)
            raise
        finally:
            if wav_path != source:
                _safe_unlink(wav_path)
        logger.info("segmentation finished session=%s segments=%d", session.session_id, written)
        return written
