from __future__ import annotations

import argparse
import dataclasses
import logging
import time
from pathlib import Path

from segscribe.internal_core.asr import (
    MockASRProvider,
    RemoteWhisperProvider,
    TranscriptionOrchestrator,
    TranscriptionProvider,
    WhisperCppProvider,
)
from segscribe.internal_core.config import TranscriptionConfig, load_config
from segscribe.internal_core.logging_utils import configure_logging
from segscribe.internal_core.network import NetworkMonitor
from segscribe.internal_core.segment_store import InMemorySegmentStore

logger = logging.getLogger(__name__)

_SETTLED = ("completed", "failed")
# Offline runs never drain, so parked segments count as done.
_SETTLED_OFFLINE = _SETTLED + ("queued",)


def _build_remote(cfg: TranscriptionConfig, provider: str) -> TranscriptionProvider:
    if provider == "mock":
        return MockASRProvider()
    return RemoteWhisperProvider(
        api_url=cfg.SCRIBE_REMOTE_API_URL,
        api_key=cfg.SCRIBE_REMOTE_API_KEY,
        model=cfg.SCRIBE_WHISPER_MODEL,
        response_format=cfg.SCRIBE_RESPONSE_FORMAT,
        temperature=cfg.SCRIBE_TEMPERATURE,
        language=cfg.SCRIBE_LANGUAGE,
        timeout_sec=cfg.SCRIBE_API_TIMEOUT_SECONDS,
    )


def _build_local(cfg: TranscriptionConfig) -> WhisperCppProvider | None:
    if not cfg.SCRIBE_LOCAL_FALLBACK_ENABLED:
        return None
    return WhisperCppProvider(
        bin_path=cfg.SCRIBE_WHISPER_CPP_BIN,
        model_path=cfg.SCRIBE_WHISPER_CPP_MODEL,
        no_gpu=cfg.SCRIBE_WHISPER_CPP_NO_GPU,
        language=cfg.SCRIBE_LANGUAGE,
        timeout_sec=cfg.SCRIBE_API_TIMEOUT_SECONDS,
    )


def transcribe_recording(
    recording: Path,
    cfg: TranscriptionConfig,
    provider: str = "remote",
    offline: bool = False,
    timeout_sec: float = 600.0,
    poll_sec: float = 0.5,
) -> tuple[str, dict[str, int]]:
    """
    Run one recording through the pipeline and wait until every segment settles.

    With ``offline`` set the network is never reported back, so segments parked
    in the offline queue are treated as settled and show up as ``queued`` in the
    returned counts.
    """
    settled = _SETTLED_OFFLINE if offline else _SETTLED
    store = InMemorySegmentStore(persist_path=cfg.store_path())
    network = NetworkMonitor(initially_connected=not offline)
    orchestrator = TranscriptionOrchestrator(
        store,
        cfg,
        _build_remote(cfg, provider),
        local=_build_local(cfg),
        network=network,
    )
    try:
        session, segmentation = orchestrator.ingest_recording(recording.stem, recording)
        segmentation.result(timeout=timeout_sec)

        deadline = time.monotonic() + timeout_sec
        while True:
            segments = store.segments_for_session(session.session_id)
            if all(s.status in settled for s in segments):
                break
            if time.monotonic() > deadline:
                logger.warning("timed out waiting for %d segment(s)", sum(s.status not in settled for s in segments))
                break
            time.sleep(poll_sec)

        counts: dict[str, int] = {}
        for segment in segments:
            counts[segment.status] = counts.get(segment.status, 0) + 1
        return orchestrator.full_transcription(session.session_id), counts
    finally:
        orchestrator.shutdown(wait=False)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Segment a recording and transcribe it with remote/local fallback."
    )
    parser.add_argument(
        "recording",
        help="Path to a finished recording (WAV, or any format ffmpeg/miniaudio can decode)",
    )
    parser.add_argument(
        "--provider",
        choices=["remote", "mock"],
        default="remote",
        help="Primary provider (default: remote Whisper API)",
    )
    parser.add_argument(
        "--segment-seconds",
        type=float,
        default=None,
        help="Override SCRIBE_SEGMENT_SECONDS for this run.",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Start with the network marked unreachable (segments stay queued).",
    )
    parser.add_argument("--timeout-sec", type=float, default=600.0)
    parser.add_argument("--log-level", default=None, help="Override SCRIBE_LOG_LEVEL.")
    args = parser.parse_args()

    cfg = load_config()
    if args.segment_seconds is not None:
        cfg = dataclasses.replace(cfg, SCRIBE_SEGMENT_SECONDS=args.segment_seconds)
        cfg.validate()
    configure_logging(args.log_level or cfg.SCRIBE_LOG_LEVEL)

    recording = Path(args.recording).expanduser()
    if not recording.exists():
        raise SystemExit(f"recording not found: {recording}")

    text, counts = transcribe_recording(
        recording,
        cfg,
        provider=args.provider,
        offline=args.offline,
        timeout_sec=args.timeout_sec,
    )
    print("segments: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    print(text)


if __name__ == "__main__":
    main()
