from __future__ import annotations

from .base import (
    ArtifactIOError,
    ASRError,
    ConfigurationError,
    EngineUnavailableError,
    NetworkError,
    RecognitionError,
    ResponseFormatError,
    TranscriptionProvider,
)
from .mock import MockASRProvider
from .orchestrator import InvalidTransitionError, TimerScheduler, TranscriptionOrchestrator
from .remote_whisper import RemoteWhisperProvider
from .whisper_cpp import WhisperCppProvider, whisper_cpp_available

__all__ = [
    "ASRError",
    "ArtifactIOError",
    "ConfigurationError",
    "EngineUnavailableError",
    "InvalidTransitionError",
    "MockASRProvider",
    "NetworkError",
    "RecognitionError",
    "RemoteWhisperProvider",
    "ResponseFormatError",
    "TimerScheduler",
    "TranscriptionOrchestrator",
    "TranscriptionProvider",
    "WhisperCppProvider",
    "whisper_cpp_available",
]
