from __future__ import annotations

"""
HTTP surface for segscribe.

Design intent:
- Keep API orchestration thin and typed.
- Delegate lifecycle, retry and fallback policy to the transcription orchestrator.
- Never return transcript text inside error details or audit payloads.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from segscribe.internal_core.asr import RemoteWhisperProvider, TranscriptionOrchestrator, WhisperCppProvider
from segscribe.internal_core.config import load_config
from segscribe.internal_core.contracts import AuditEvent, OrchestratorStatus, SegmentRecord, SessionRecord
from segscribe.internal_core.logging_utils import configure_logging
from segscribe.internal_core.network import NetworkMonitor
from segscribe.internal_core.segment_store import InMemorySegmentStore
from segscribe.internal_core.segmenter import SegmentationError


class CreateSessionRequest(BaseModel):
    title: str = Field(min_length=1, max_length=256)
    audio_path: str = Field(min_length=1)
    wait_for_segmentation: bool = False


class CreateSessionResponse(BaseModel):
    session: SessionRecord
    segments_written: Optional[int] = None


class SessionDetailResponse(BaseModel):
    session: SessionRecord
    segments: list[SegmentRecord] = Field(default_factory=list)


class TranscriptResponse(BaseModel):
    session_id: str
    transcript_text: str
    completed_segments: int
    total_segments: int


class DeleteSessionResponse(BaseModel):
    session_id: str
    segments_deleted: int


class CountResponse(BaseModel):
    count: int


class NetworkUpdateRequest(BaseModel):
    connected: bool


class NetworkUpdateResponse(BaseModel):
    connected: bool
    changed: bool


app = FastAPI(title="segscribe transcription service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _build_orchestrator() -> TranscriptionOrchestrator:
    cfg = load_config()
    configure_logging(cfg.SCRIBE_LOG_LEVEL)
    store = InMemorySegmentStore(persist_path=cfg.store_path())
    remote = RemoteWhisperProvider(
        api_url=cfg.SCRIBE_REMOTE_API_URL,
        api_key=cfg.SCRIBE_REMOTE_API_KEY,
        model=cfg.SCRIBE_WHISPER_MODEL,
        response_format=cfg.SCRIBE_RESPONSE_FORMAT,
        temperature=cfg.SCRIBE_TEMPERATURE,
        language=cfg.SCRIBE_LANGUAGE,
        timeout_sec=cfg.SCRIBE_API_TIMEOUT_SECONDS,
    )
    local = None
    if cfg.SCRIBE_LOCAL_FALLBACK_ENABLED:
        local = WhisperCppProvider(
            bin_path=cfg.SCRIBE_WHISPER_CPP_BIN,
            model_path=cfg.SCRIBE_WHISPER_CPP_MODEL,
            no_gpu=cfg.SCRIBE_WHISPER_CPP_NO_GPU,
            language=cfg.SCRIBE_LANGUAGE,
            timeout_sec=cfg.SCRIBE_API_TIMEOUT_SECONDS,
        )
        if not local.is_available():
            logger.warning("local whisper.cpp engine unavailable; fallback will keep using the remote provider")
    network = NetworkMonitor(
        host=cfg.SCRIBE_NETWORK_PROBE_HOST,
        port=cfg.SCRIBE_NETWORK_PROBE_PORT,
        interval_sec=cfg.SCRIBE_NETWORK_PROBE_INTERVAL_SECONDS,
    )
    orchestrator = TranscriptionOrchestrator(store, cfg, remote, local=local, network=network)
    if cfg.SCRIBE_NETWORK_PROBE_INTERVAL_SECONDS > 0:
        network.start_probe()
    orchestrator.resume_from_store()
    return orchestrator


_orchestrator_lock = threading.Lock()


def _get_orchestrator() -> TranscriptionOrchestrator:
    existing = getattr(app.state, "orchestrator", None)
    if existing is not None:
        return existing
    with _orchestrator_lock:
        existing = getattr(app.state, "orchestrator", None)
        if existing is None:
            existing = _build_orchestrator()
            setattr(app.state, "orchestrator", existing)
    return existing


def _get_network_monitor() -> NetworkMonitor:
    configured = getattr(app.state, "network_monitor", None)
    if configured is not None:
        return configured
    network = _get_orchestrator().network
    if network is None:
        raise HTTPException(status_code=409, detail="Orchestrator has no network monitor.")
    return network


def _require_session(orchestrator: TranscriptionOrchestrator, session_id: str) -> SessionRecord:
    try:
        return orchestrator.store.get_session(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}") from exc


@app.on_event("shutdown")
def _shutdown_orchestrator() -> None:
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        return
    if orchestrator.network is not None:
        orchestrator.network.stop_probe(timeout_sec=1.0)
    orchestrator.shutdown(wait=False)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sessions", response_model=CreateSessionResponse)
def create_session(req: CreateSessionRequest) -> CreateSessionResponse:
    orchestrator = _get_orchestrator()
    audio_path = Path(req.audio_path).expanduser()
    if not audio_path.is_file():
        raise HTTPException(status_code=404, detail=f"Audio file not found: {audio_path}")

    try:
        session, segmentation = orchestrator.ingest_recording(req.title, audio_path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    if not req.wait_for_segmentation:
        return CreateSessionResponse(session=session)
    try:
        written = segmentation.result()
    except SegmentationError as exc:
        raise HTTPException(status_code=500, detail=f"Segmentation failed: {exc}") from exc
    return CreateSessionResponse(session=session, segments_written=written)


@app.get("/sessions", response_model=list[SessionRecord])
def list_sessions() -> list[SessionRecord]:
    sessions = _get_orchestrator().store.fetch(SessionRecord)
    return sorted(sessions, key=lambda s: s.created_at)


@app.get("/sessions/{session_id}", response_model=SessionDetailResponse)
def get_session(session_id: str) -> SessionDetailResponse:
    orchestrator = _get_orchestrator()
    session = _require_session(orchestrator, session_id)
    return SessionDetailResponse(
        session=session,
        segments=orchestrator.store.segments_for_session(session_id),
    )


@app.get("/sessions/{session_id}/transcript", response_model=TranscriptResponse)
def get_transcript(session_id: str) -> TranscriptResponse:
    orchestrator = _get_orchestrator()
    _require_session(orchestrator, session_id)
    segments = orchestrator.store.segments_for_session(session_id)
    return TranscriptResponse(
        session_id=session_id,
        transcript_text=orchestrator.full_transcription(session_id),
        completed_segments=sum(1 for s in segments if s.status == "completed"),
        total_segments=len(segments),
    )


@app.get("/sessions/{session_id}/audit", response_model=list[AuditEvent])
def get_audit_trail(session_id: str) -> list[AuditEvent]:
    orchestrator = _get_orchestrator()
    _require_session(orchestrator, session_id)
    return orchestrator.store.audit_events(session_id)


@app.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
def delete_session(session_id: str) -> DeleteSessionResponse:
    orchestrator = _get_orchestrator()
    try:
        deleted = orchestrator.delete_session(session_id).result()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}") from exc
    return DeleteSessionResponse(session_id=session_id, segments_deleted=deleted)


@app.post("/segments/retry-failed", response_model=CountResponse)
def retry_failed_segments() -> CountResponse:
    return CountResponse(count=_get_orchestrator().retry_failed().result())


@app.post("/segments/clear-completed", response_model=CountResponse)
def clear_completed_segments() -> CountResponse:
    return CountResponse(count=_get_orchestrator().clear_completed().result())


@app.post("/network", response_model=NetworkUpdateResponse)
def update_network(req: NetworkUpdateRequest) -> NetworkUpdateResponse:
    network = _get_network_monitor()
    changed = network.set_connected(req.connected)
    return NetworkUpdateResponse(connected=network.is_connected, changed=changed)


@app.get("/orchestrator/status", response_model=OrchestratorStatus)
def orchestrator_status() -> OrchestratorStatus:
    return _get_orchestrator().status()


