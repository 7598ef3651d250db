import logging
import subprocess
from pathlib import Path

import pytest

from segscribe.internal_core import audio_utils
from segscribe.internal_core.asr import (
    ConfigurationError,
    EngineUnavailableError,
    MockASRProvider,
    NetworkError,
    RecognitionError,
)
from segscribe.internal_core.asr.orchestrator import InvalidTransitionError, backoff_delay, transition
from segscribe.internal_core.contracts import SegmentRecord
from segscribe.internal_core.network import NetworkMonitor
from segscribe.internal_core.segment_store import InMemorySegmentStore, StoreIOError
from segscribe.internal_core.segmenter import SegmentationError


def _net_err() -> NetworkError:
    return NetworkError("REMOTE_TIMEOUT", "timed out", "remote_whisper")


def _event_types(store, session_id):
    return [e.type for e in store.audit_events(session_id)]


class _FlakyStore(InMemorySegmentStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False

    def save(self) -> None:
        if self.fail_saves:
            raise StoreIOError("disk full")
        super().save()


def test_successful_segment_is_completed_persisted_and_artifact_removed(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider(["hello there"], confidence=0.9)
    orchestrator, store, _ = build_orchestrator(remote)
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment).result()

    stored = store.get_segment(segment.segment_id)
    assert stored.status == "completed"
    assert stored.transcription == "hello there"
    assert stored.provider_used == "mock"
    assert stored.confidence == 0.9
    assert not Path(segment.audio_path).exists()
    assert store.save_count >= 2
    assert "SEGMENT_COMPLETED" in _event_types(store, session.session_id)


def test_retry_budget_is_exactly_max_retries_with_exponential_backoff(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err() for _ in range(10)])
    orchestrator, store, scheduler = build_orchestrator(
        remote, SCRIBE_MAX_RETRIES=3, SCRIBE_FALLBACK_THRESHOLD=100
    )
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)
    scheduler.fire_all()

    assert remote.call_count == 3
    assert scheduler.delays == [2.0, 4.0]
    assert segment.status == "failed"
    assert segment.retry_count == 3
    assert segment.last_error.startswith("REMOTE_TIMEOUT")
    assert Path(segment.audio_path).exists()
    assert _event_types(store, session.session_id).count("SEGMENT_RETRY_SCHEDULED") == 2


def test_backoff_delay_doubles() -> None:
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_last_resort_local_attempt_after_budget_exhausted(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err(), _net_err()])
    local = MockASRProvider(["local words"], provider_name="local")
    orchestrator, store, scheduler = build_orchestrator(
        remote, local=local, SCRIBE_MAX_RETRIES=2, SCRIBE_FALLBACK_THRESHOLD=100
    )
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)
    scheduler.fire_all()

    assert remote.call_count == 2
    assert local.call_count == 1
    assert segment.status == "completed"
    assert segment.transcription == "local words"
    assert segment.retry_count == 2
    events = store.audit_events(session.session_id)
    assert any(e.type == "SEGMENT_DISPATCHED" and e.code == "LAST_RESORT" for e in events)


def test_failed_last_resort_is_not_attempted_again(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err()])
    local = MockASRProvider(
        [RecognitionError("WHISPER_EMPTY_OUTPUT", "no speech", "local")], provider_name="local"
    )
    orchestrator, store, scheduler = build_orchestrator(
        remote, local=local, SCRIBE_MAX_RETRIES=1, SCRIBE_FALLBACK_THRESHOLD=100
    )
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)
    scheduler.fire_all()

    assert remote.call_count == 1
    assert local.call_count == 1
    assert segment.status == "failed"
    assert segment.retry_count == 1
    assert segment.last_error.startswith("WHISPER_EMPTY_OUTPUT")
    assert scheduler.pending() == []


def test_configuration_error_fails_without_backoff(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([ConfigurationError("REMOTE_API_KEY_MISSING", "no key", "remote_whisper")])
    orchestrator, store, scheduler = build_orchestrator(remote, SCRIBE_LOCAL_FALLBACK_ENABLED=False)
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)

    assert remote.call_count == 1
    assert segment.status == "failed"
    assert segment.retry_count == 0
    assert scheduler.entries == []


def test_unavailable_local_engine_in_fallback_fails_without_retry(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err()])
    local = MockASRProvider(
        [EngineUnavailableError("WHISPER_UNAVAILABLE", "model missing", "local")], provider_name="local"
    )
    orchestrator, store, scheduler = build_orchestrator(
        remote, local=local, SCRIBE_FALLBACK_THRESHOLD=1
    )
    session = session_factory(store)
    first = segment_factory(session, 0)
    second = segment_factory(session, 1)

    orchestrator.enqueue(first)
    assert orchestrator.fallback_mode is True
    orchestrator.enqueue(second)

    assert second.status == "failed"
    assert second.retry_count == 0
    assert local.call_count == 1


def test_breaker_engages_and_never_resets(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err(), _net_err()])
    local = MockASRProvider(["one", "two", "three"], provider_name="local")
    orchestrator, store, scheduler = build_orchestrator(
        remote, local=local, SCRIBE_FALLBACK_THRESHOLD=2
    )
    session = session_factory(store)
    a = segment_factory(session, 0)
    b = segment_factory(session, 1)

    orchestrator.enqueue(a)
    assert orchestrator.fallback_mode is False
    orchestrator.enqueue(b)
    assert orchestrator.fallback_mode is True

    scheduler.fire_all()
    status = orchestrator.status()
    assert status.fallback_mode is True
    assert status.consecutive_failures == 0
    assert a.status == "completed" and b.status == "completed"

    c = segment_factory(session, 2)
    orchestrator.enqueue(c)
    assert c.transcription == "three"
    assert remote.call_count == 2
    assert local.call_count == 3
    assert orchestrator.fallback_mode is True
    assert "FALLBACK_ENGAGED" in _event_types(store, session.session_id)


def test_fallback_without_local_provider_keeps_using_remote(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err(), "recovered"])
    orchestrator, store, scheduler = build_orchestrator(remote, local=None, SCRIBE_FALLBACK_THRESHOLD=1)
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)
    assert orchestrator.fallback_mode is True
    scheduler.fire_all()

    assert remote.call_count == 2
    assert segment.transcription == "recovered"


def test_offline_segments_queue_and_drain_exactly_once(
    build_orchestrator, session_factory, segment_factory
) -> None:
    network = NetworkMonitor(initially_connected=False)
    remote = MockASRProvider()
    orchestrator, store, _ = build_orchestrator(remote, network=network)
    session = session_factory(store)
    segments = [segment_factory(session, i) for i in range(3)]

    for segment in segments:
        orchestrator.enqueue(segment)

    assert [s.status for s in segments] == ["queued"] * 3
    assert remote.call_count == 0
    assert orchestrator.status().queued_segments == 3

    assert network.set_connected(True) is True
    assert remote.call_count == 3
    assert sorted(remote.calls) == sorted(s.segment_id for s in segments)
    assert all(s.status == "completed" for s in segments)

    assert network.set_connected(True) is False
    network.set_connected(False)
    network.set_connected(True)
    assert remote.call_count == 3
    assert orchestrator.status().queued_segments == 0


def test_retry_timer_while_offline_parks_segment(
    build_orchestrator, session_factory, segment_factory
) -> None:
    network = NetworkMonitor(initially_connected=True)
    remote = MockASRProvider([_net_err(), "after reconnect"])
    orchestrator, store, scheduler = build_orchestrator(remote, network=network)
    session = session_factory(store)
    segment = segment_factory(session, 0)

    orchestrator.enqueue(segment)
    network.set_connected(False)
    scheduler.fire_all()

    assert segment.status == "queued"
    assert remote.call_count == 1

    network.set_connected(True)
    assert segment.status == "completed"
    assert segment.transcription == "after reconnect"


def test_full_transcription_orders_by_start_time_and_skips_unfinished(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider(
        ["B", "A", ConfigurationError("REMOTE_AUTH_REJECTED", "HTTP 401", "remote_whisper")]
    )
    orchestrator, store, _ = build_orchestrator(remote, SCRIBE_LOCAL_FALLBACK_ENABLED=False)
    session = session_factory(store)
    second = segment_factory(session, 1)
    first = segment_factory(session, 0)
    third = segment_factory(session, 2)

    orchestrator.enqueue(second)
    orchestrator.enqueue(first)
    orchestrator.enqueue(third)

    assert third.status == "failed"
    assert orchestrator.full_transcription(session.session_id) == "A B"


def test_full_transcription_unknown_session_raises(build_orchestrator) -> None:
    orchestrator, _, _ = build_orchestrator(MockASRProvider())
    with pytest.raises(KeyError):
        orchestrator.full_transcription("missing")


def test_clear_completed_is_idempotent_and_keeps_store(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider(["x", "y"])
    orchestrator, store, _ = build_orchestrator(remote)
    session = session_factory(store)
    orchestrator.enqueue(segment_factory(session, 0))
    orchestrator.enqueue(segment_factory(session, 1))

    assert orchestrator.clear_completed().result() == 2
    assert orchestrator.clear_completed().result() == 0
    assert orchestrator.status().working_set == 0
    assert len(store.fetch(SegmentRecord)) == 2
    assert orchestrator.full_transcription(session.session_id) == "x y"


def test_retry_failed_resets_budget_and_redispatches(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider(
        [ConfigurationError("REMOTE_API_KEY_MISSING", "no key", "remote_whisper"), "second try"]
    )
    orchestrator, store, _ = build_orchestrator(remote, SCRIBE_LOCAL_FALLBACK_ENABLED=False)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    orchestrator.enqueue(segment)
    assert segment.status == "failed"

    assert orchestrator.retry_failed().result() == 1
    assert segment.status == "completed"
    assert segment.retry_count == 0
    assert segment.last_error is None
    assert orchestrator.retry_failed().result() == 0


def test_retry_failed_while_offline_waits_for_drain(
    build_orchestrator, session_factory, segment_factory
) -> None:
    network = NetworkMonitor(initially_connected=True)
    remote = MockASRProvider(
        [ConfigurationError("REMOTE_API_KEY_MISSING", "no key", "remote_whisper"), "drained"]
    )
    orchestrator, store, _ = build_orchestrator(remote, network=network, SCRIBE_LOCAL_FALLBACK_ENABLED=False)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    orchestrator.enqueue(segment)

    network.set_connected(False)
    orchestrator.retry_failed()
    assert segment.status == "failed"
    assert orchestrator.status().queued_segments == 1

    network.set_connected(True)
    assert segment.status == "completed"
    assert segment.transcription == "drained"


def test_persist_failure_keeps_artifact_and_is_surfaced(
    build_orchestrator, session_factory, segment_factory
) -> None:
    store = _FlakyStore()
    remote = MockASRProvider(["text"])
    orchestrator, _, _ = build_orchestrator(remote, store=store)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    store.insert(segment)
    store.fail_saves = True

    orchestrator.enqueue(segment)

    assert segment.status == "completed"
    assert segment.last_error.startswith("PERSIST_FAILED")
    assert Path(segment.audio_path).exists()
    assert "PERSIST_FAILED" in _event_types(store, session.session_id)


def test_silent_segment_completes_without_provider_call(
    build_orchestrator, session_factory, segment_factory, make_silent_wav, tmp_path
) -> None:
    remote = MockASRProvider()
    orchestrator, store, _ = build_orchestrator(remote, SCRIBE_VAD_ENABLED=True)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    make_silent_wav(Path(segment.audio_path), 0.5)

    orchestrator.enqueue(segment)

    assert remote.call_count == 0
    assert segment.status == "completed"
    assert segment.transcription == ""
    assert segment.provider_used == "silence"
    assert orchestrator.full_transcription(session.session_id) == ""


def test_preprocessed_copy_is_sent_and_removed(
    build_orchestrator, session_factory, segment_factory, make_tone_wav, tmp_path
) -> None:
    seen = []

    class _InspectingProvider(MockASRProvider):
        def transcribe(self, audio_path, segment_id=""):
            from segscribe.internal_core.audio_utils import load_wav_info

            seen.append((audio_path, Path(audio_path).exists(), load_wav_info(Path(audio_path))))
            return super().transcribe(audio_path, segment_id)

    remote = _InspectingProvider(["conditioned"])
    orchestrator, store, _ = build_orchestrator(
        remote, SCRIBE_USE_PREPROCESSING=True, SCRIBE_VAD_ENABLED=True
    )
    session = session_factory(store)
    segment = segment_factory(session, 0)
    make_tone_wav(Path(segment.audio_path), 0.5, sample_rate=44100, channels=2)

    orchestrator.enqueue(segment)

    assert segment.transcription == "conditioned"
    (sent_path, existed, (_, rate, channels)) = seen[0]
    assert sent_path.endswith("_pre.wav")
    assert existed is True
    assert rate == 16000
    assert channels == 1
    assert not Path(sent_path).exists()


def test_unreadable_segment_fails_without_touching_breaker(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider()
    orchestrator, store, scheduler = build_orchestrator(remote, SCRIBE_VAD_ENABLED=True)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    Path(segment.audio_path).write_bytes(b"not a wav file")

    orchestrator.enqueue(segment)

    assert remote.call_count == 0
    assert segment.status == "failed"
    assert segment.last_error.startswith("AUDIO_INVALID")
    assert orchestrator.status().consecutive_failures == 0
    assert scheduler.entries == []


def test_ingest_recording_segments_and_transcribes(
    build_orchestrator, make_tone_wav, tmp_path
) -> None:
    remote = MockASRProvider(["first", "second", "third"])
    orchestrator, store, _ = build_orchestrator(remote, SCRIBE_SEGMENT_SECONDS=1.0)
    recording = make_tone_wav(tmp_path / "rec.wav", 2.5, sample_rate=8000)

    session, segmentation = orchestrator.ingest_recording("clinic", recording)

    assert segmentation.result() == 3
    segments = store.segments_for_session(session.session_id)
    assert [s.index for s in segments] == [0, 1, 2]
    assert segments[-1].end_sec == pytest.approx(2.5)
    assert all(s.status == "completed" for s in segments)
    assert all(not Path(s.audio_path).exists() for s in segments)
    assert orchestrator.full_transcription(session.session_id) == "first second third"
    types = _event_types(store, session.session_id)
    assert types[0] == "SESSION_CREATED"
    assert types.count("SEGMENT_WRITTEN") == 3


def test_ingest_recording_missing_file_raises(build_orchestrator, tmp_path) -> None:
    orchestrator, _, _ = build_orchestrator(MockASRProvider())
    with pytest.raises(FileNotFoundError):
        orchestrator.ingest_recording("missing", tmp_path / "nope.wav")


def test_segmentation_failure_is_recorded_on_session(build_orchestrator, tmp_path) -> None:
    orchestrator, store, _ = build_orchestrator(MockASRProvider())
    corrupt = tmp_path / "corrupt.wav"
    corrupt.write_bytes(b"RIFF-broken")

    session, segmentation = orchestrator.ingest_recording("broken", corrupt)

    with pytest.raises(SegmentationError):
        segmentation.result()
    assert session.error
    assert "SEGMENTATION_FAILED" in _event_types(store, session.session_id)


def test_delete_session_cancels_retry_and_ignores_stale_timer(
    build_orchestrator, session_factory, segment_factory
) -> None:
    remote = MockASRProvider([_net_err()])
    orchestrator, store, scheduler = build_orchestrator(remote, SCRIBE_FALLBACK_THRESHOLD=100)
    session = session_factory(store)
    segment = segment_factory(session, 0)
    orchestrator.enqueue(segment)
    assert orchestrator.status().scheduled_retries == 1
    _, callback, handle = scheduler.entries[0]

    assert orchestrator.delete_session(session.session_id).result() == 1

    assert handle.cancelled is True
    assert orchestrator.status().scheduled_retries == 0
    assert store.fetch(SegmentRecord) == []
    assert not Path(segment.audio_path).exists()
    callback()
    assert remote.call_count == 1
    assert "SESSION_DESTROYED" in _event_types(store, session.session_id)


def test_delete_unknown_session_raises(build_orchestrator) -> None:
    orchestrator, _, _ = build_orchestrator(MockASRProvider())
    with pytest.raises(KeyError):
        orchestrator.delete_session("missing").result()


def test_resume_from_store_requeues_unfinished_segments(
    build_orchestrator, session_factory, segment_factory
) -> None:
    store = InMemorySegmentStore()
    session = session_factory(store)
    pending = segment_factory(session, 0)
    interrupted = segment_factory(session, 1, status="processing")
    done = segment_factory(session, 2, status="completed")
    done.transcription = "already"
    for segment in (pending, interrupted, done):
        store.insert(segment)

    remote = MockASRProvider(["p", "i"])
    orchestrator, _, _ = build_orchestrator(remote, store=store)

    assert orchestrator.resume_from_store().result() == 2
    assert remote.call_count == 2
    assert pending.status == "completed"
    assert interrupted.status == "completed"
    assert orchestrator.full_transcription(session.session_id) == "p i already"


@pytest.mark.parametrize(
    "current,target",
    [("completed", "pending"), ("queued", "failed"), ("failed", "completed"), ("pending", "completed")],
)
def test_illegal_transitions_are_rejected(current, target) -> None:
    segment = SegmentRecord(index=0, start_sec=0.0, end_sec=1.0, status=current, audio_path="x.wav")
    with pytest.raises(InvalidTransitionError):
        transition(segment, target)
    assert segment.status == current


def test_ingest_24bit_recording_with_conditioning_reaches_provider(
    build_orchestrator, make_tone_wav, tmp_path
) -> None:
    remote = MockASRProvider(["deep voice"])
    orchestrator, store, _ = build_orchestrator(
        remote, SCRIBE_VAD_ENABLED=True, SCRIBE_USE_PREPROCESSING=True, SCRIBE_SEGMENT_SECONDS=30.0
    )
    recording = make_tone_wav(tmp_path / "studio.wav", 1.0, sample_rate=48000, sample_width=3)

    session, segmentation = orchestrator.ingest_recording("studio", recording)

    assert segmentation.result() == 1
    (segment,) = store.segments_for_session(session.session_id)
    assert remote.call_count == 1
    assert segment.status == "completed"
    assert segment.last_error is None
    assert orchestrator.full_transcription(session.session_id) == "deep voice"


def test_ingest_compressed_recording_is_converted_then_removed(
    build_orchestrator, make_tone_wav, monkeypatch, tmp_path
) -> None:
    recording = tmp_path / "visit.m4a"
    recording.write_bytes(b"\x00\x00\x00\x20ftypM4A ")

    def fake_ffmpeg(cmd, **kwargs):
        make_tone_wav(Path(cmd[-1]), 2.5, sample_rate=16000)
        return subprocess.CompletedProcess(cmd, 0, stdout=b"", stderr=b"")

    monkeypatch.setattr(audio_utils, "_which", lambda cmd: "/usr/bin/ffmpeg")
    monkeypatch.setattr(audio_utils.subprocess, "run", fake_ffmpeg)
    remote = MockASRProvider(["one", "two", "three"])
    orchestrator, store, _ = build_orchestrator(remote, SCRIBE_SEGMENT_SECONDS=1.0)

    session, segmentation = orchestrator.ingest_recording("visit", recording)

    assert segmentation.result() == 3
    assert session.audio_path == str(recording)
    assert orchestrator.full_transcription(session.session_id) == "one two three"
    assert list((tmp_path / "work" / "converted").iterdir()) == []
    assert recording.exists()


def test_undecodable_compressed_recording_fails_segmentation(
    build_orchestrator, monkeypatch, tmp_path
) -> None:
    recording = tmp_path / "visit.m4a"
    recording.write_bytes(b"junk")

    def fake_ffmpeg(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr=b"Invalid data found when processing input")

    monkeypatch.setattr(audio_utils, "_which", lambda cmd: "/usr/bin/ffmpeg")
    monkeypatch.setattr(audio_utils.subprocess, "run", fake_ffmpeg)
    orchestrator, store, _ = build_orchestrator(MockASRProvider())

    session, segmentation = orchestrator.ingest_recording("visit", recording)

    with pytest.raises(SegmentationError, match="Invalid data found"):
        segmentation.result()
    assert "SEGMENTATION_FAILED" in _event_types(store, session.session_id)
    assert store.segments_for_session(session.session_id) == []


def test_kept_artifact_is_removed_once_store_recovers(
    build_orchestrator, session_factory, segment_factory
) -> None:
    store = _FlakyStore()
    remote = MockASRProvider(["first", "second"])
    orchestrator, _, _ = build_orchestrator(remote, store=store)
    session = session_factory(store)
    first = segment_factory(session, 0)
    second = segment_factory(session, 1)
    store.insert(first)
    store.insert(second)

    store.fail_saves = True
    orchestrator.enqueue(first)
    assert Path(first.audio_path).exists()

    store.fail_saves = False
    orchestrator.enqueue(second)

    assert second.status == "completed"
    assert not Path(second.audio_path).exists()
    assert not Path(first.audio_path).exists()
    assert _event_types(store, session.session_id).count("ARTIFACT_RECLAIMED") == 1


def test_enqueue_after_session_deleted_is_dropped_quietly(
    build_orchestrator, session_factory, segment_factory, caplog
) -> None:
    remote = MockASRProvider()
    orchestrator, store, _ = build_orchestrator(remote)
    session = session_factory(store)
    late = segment_factory(session, 0)
    orchestrator.delete_session(session.session_id).result()

    with caplog.at_level(logging.INFO, logger="segscribe.internal_core.asr.orchestrator"):
        assert orchestrator.enqueue(late).result() is None

    assert remote.call_count == 0
    assert store.fetch(SegmentRecord) == []
    assert not Path(late.audio_path).exists()
    assert orchestrator.status().working_set == 0
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert any("session gone" in r.getMessage() for r in caplog.records)
