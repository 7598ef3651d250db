from __future__ import annotations

from abc import ABC, abstractmethod

from ..contracts import TranscriptionResult


class ASRError(RuntimeError):
    retryable = True

    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name

    def describe(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(ASRError):
    """Credentials or endpoint configuration are missing or rejected."""

    retryable = False


class NetworkError(ASRError):
    """Timeout, connection failure or a transient server-side status."""


class ResponseFormatError(ASRError):
    """Provider answered with a payload that is not a transcription."""


class EngineUnavailableError(ASRError):
    """The local engine cannot run on this machine."""

    retryable = False


class RecognitionError(ASRError):
    """The engine ran but produced no usable transcript."""


class ArtifactIOError(ASRError):
    """The segment audio could not be read."""

    retryable = False


class TranscriptionProvider(ABC):
    @abstractmethod
    def transcribe(self, audio_path: str, segment_id: str = "") -> TranscriptionResult: ...

    @abstractmethod
    def name(self) -> str: ...

    def is_available(self) -> bool:
        return True
