import dataclasses
import wave
from concurrent.futures import Executor, Future
from pathlib import Path

import numpy as np
import pytest

from segscribe.internal_core.asr.orchestrator import TranscriptionOrchestrator
from segscribe.internal_core.config import load_config
from segscribe.internal_core.contracts import SegmentRecord, SessionRecord
from segscribe.internal_core.segment_store import InMemorySegmentStore


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        fut = Future()
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
        return fut


class _ManualHandle:
    def __init__(self) -> None:
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records backoff timers; tests fire them explicitly."""

    def __init__(self) -> None:
        self.entries = []

    def schedule(self, delay_sec, callback):
        handle = _ManualHandle()
        self.entries.append((delay_sec, callback, handle))
        return handle

    @property
    def delays(self):
        return [delay for delay, _, _ in self.entries]

    def pending(self):
        return [e for e in self.entries if not e[2].cancelled and not e[2].fired]

    def fire_next(self) -> float:
        delay, callback, handle = self.pending()[0]
        handle.fired = True
        callback()
        return delay

    def fire_all(self, limit: int = 100) -> int:
        fired = 0
        while self.pending():
            if fired >= limit:
                raise AssertionError("scheduler did not settle")
            self.fire_next()
            fired += 1
        return fired


def _write_wav(path: Path, samples: np.ndarray, sample_rate: int, sample_width: int = 2) -> Path:
    frames = np.asarray(samples, dtype=np.float32)
    if frames.ndim == 1:
        frames = frames.reshape(-1, 1)
    if sample_width == 3:
        ints = (frames.clip(-1.0, 1.0) * 8388607.0).round().astype("<i4")
        pcm = ints.view(np.uint8).reshape(-1, 4)[:, :3]
    else:
        pcm = (frames.clip(-1.0, 1.0) * 32767.0).round().astype("<i2")
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(frames.shape[1])
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return path


@pytest.fixture
def make_tone_wav():
    def _make(
        path: Path,
        seconds: float,
        sample_rate: int = 16000,
        amplitude: float = 0.3,
        channels: int = 1,
        sample_width: int = 2,
    ):
        n = int(round(seconds * sample_rate))
        t = np.arange(n, dtype=np.float32) / float(sample_rate)
        tone = amplitude * np.sin(2.0 * np.pi * 440.0 * t)
        if channels > 1:
            tone = np.stack([tone] * channels, axis=1)
        return _write_wav(path, tone, sample_rate, sample_width)

    return _make


@pytest.fixture
def make_silent_wav():
    def _make(path: Path, seconds: float, sample_rate: int = 16000):
        return _write_wav(path, np.zeros(int(round(seconds * sample_rate)), dtype=np.float32), sample_rate)

    return _make


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        defaults = dict(
            SCRIBE_TMP_DIR=str(tmp_path / "work"),
            SCRIBE_STORE_PATH="",
            SCRIBE_MAX_RETRIES=5,
            SCRIBE_FALLBACK_THRESHOLD=5,
            SCRIBE_USE_PREPROCESSING=False,
            SCRIBE_VAD_ENABLED=False,
            SCRIBE_LOCAL_FALLBACK_ENABLED=True,
        )
        defaults.update(overrides)
        cfg = dataclasses.replace(load_config(), **defaults)
        cfg.validate()
        return cfg

    return _make


@pytest.fixture
def session_factory():
    def _make(store: InMemorySegmentStore, title: str = "visit", audio_path: str = "recording.wav") -> SessionRecord:
        session = SessionRecord(title=title, audio_path=audio_path)
        store.insert(session)
        return session

    return _make


@pytest.fixture
def segment_factory(tmp_path, make_tone_wav):
    def _make(
        session: SessionRecord,
        index: int,
        start_sec: float = None,
        end_sec: float = None,
        status: str = "pending",
        seconds: float = 0.25,
    ) -> SegmentRecord:
        start = float(index) * 30.0 if start_sec is None else start_sec
        end = start + 30.0 if end_sec is None else end_sec
        path = make_tone_wav(tmp_path / "segments" / f"segment-{session.session_id}-{index}.wav", seconds)
        return SegmentRecord(
            session_id=session.session_id,
            index=index,
            start_sec=start,
            end_sec=end,
            status=status,
            audio_path=str(path),
        )

    return _make


@pytest.fixture
def build_orchestrator(tmp_path, make_config):
    created = []

    def _build(remote, local=None, store=None, network=None, **cfg_overrides):
        store = store if store is not None else InMemorySegmentStore()
        scheduler = ManualScheduler()
        orchestrator = TranscriptionOrchestrator(
            store,
            make_config(**cfg_overrides),
            remote,
            local=local,
            network=network,
            control_executor=InlineExecutor(),
            worker_executor=InlineExecutor(),
            scheduler=scheduler,
            tmp_dir=tmp_path / "work",
        )
        created.append(orchestrator)
        return orchestrator, store, scheduler

    yield _build
    for orchestrator in created:
        orchestrator.shutdown()
