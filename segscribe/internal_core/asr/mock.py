from __future__ import annotations

from threading import Lock
from typing import Iterable, List, Optional, Union

from ..contracts import TranscriptionResult
from .base import TranscriptionProvider

Outcome = Union[str, BaseException]


class MockASRProvider(TranscriptionProvider):
    """
    Deterministic provider for development and tests.

    ``outcomes`` is consumed one entry per call: a string is returned as the
    transcript, an exception instance is raised. When the script runs out the
    provider returns a numbered placeholder transcript.
    """

    def __init__(
        self,
        outcomes: Optional[Iterable[Outcome]] = None,
        provider_name: str = "mock",
        available: bool = True,
        confidence: Optional[float] = None,
    ) -> None:
        self._outcomes: List[Outcome] = list(outcomes or [])
        self._provider_name = provider_name
        self._available = available
        self._confidence = confidence
        self._lock = Lock()
        self._counter = 0
        self.calls: List[str] = []

    @property
    def call_count(self) -> int:
        return self._counter

    def name(self) -> str:
        return self._provider_name

    def is_available(self) -> bool:
        return self._available

    def transcribe(self, audio_path: str, segment_id: str = "") -> TranscriptionResult:
        with self._lock:
            self._counter += 1
            self.calls.append(segment_id)
            outcome: Optional[Outcome] = self._outcomes.pop(0) if self._outcomes else None
            counter = self._counter
        if isinstance(outcome, BaseException):
            raise outcome
        text = outcome if outcome is not None else f"(mock) simulated transcript for segment {counter}."
        return TranscriptionResult(
            segment_id=segment_id,
            text=text,
            confidence=self._confidence,
            source="mock",
        )
