from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import requests

from ..contracts import TranscriptionResult
from .base import (
    ArtifactIOError,
    ConfigurationError,
    NetworkError,
    ResponseFormatError,
    TranscriptionProvider,
)

logger = logging.getLogger(__name__)


class RemoteWhisperProvider(TranscriptionProvider):
    """
    Whisper-compatible HTTP transcription API (multipart upload, JSON reply).

    Every failure is raised once as an ASRError subclass; retry policy belongs to
    the orchestrator.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = "whisper-1",
        response_format: str = "json",
        temperature: Optional[float] = None,
        language: Optional[str] = None,
        timeout_sec: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._api_url = api_url
        self._api_key = api_key
        self._model = model
        self._response_format = response_format
        self._temperature = temperature
        self._language = language
        self._timeout_sec = timeout_sec
        self._http = session or requests.Session()

    def name(self) -> str:
        return "remote_whisper"

    def is_available(self) -> bool:
        return bool(self._api_key and self._api_url)

    def _form_fields(self) -> dict[str, str]:
        fields = {
            "model": self._model,
            "response_format": self._response_format,
        }
        if self._temperature is not None:
            fields["temperature"] = str(self._temperature)
        if self._language:
            fields["language"] = self._language
        return fields

    def transcribe(self, audio_path: str, segment_id: str = "") -> TranscriptionResult:
        if not self._api_key:
            raise ConfigurationError(
                "REMOTE_API_KEY_MISSING",
                "API key not configured (set SCRIBE_REMOTE_API_KEY or OPENAI_API_KEY)",
                self.name(),
            )
        if not self._api_url:
            raise ConfigurationError("REMOTE_API_URL_MISSING", "API URL not configured", self.name())

        path = Path(audio_path)
        try:
            payload = path.read_bytes()
        except OSError as e:
            raise ArtifactIOError("ARTIFACT_READ_FAILED", f"{path}: {e}", self.name()) from e

        try:
            response = self._http.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                data=self._form_fields(),
                files={"file": (path.name, payload, "audio/wav")},
                timeout=self._timeout_sec,
            )
        except requests.Timeout as e:
            raise NetworkError("REMOTE_TIMEOUT", str(e) or "request timed out", self.name()) from e
        except requests.ConnectionError as e:
            raise NetworkError("REMOTE_CONNECTION_FAILED", str(e) or "connection failed", self.name()) from e
        except requests.RequestException as e:
            raise NetworkError("REMOTE_REQUEST_FAILED", str(e), self.name()) from e

        status = int(response.status_code)
        if status in (401, 403):
            raise ConfigurationError(
                "REMOTE_AUTH_REJECTED", f"provider rejected credentials (HTTP {status})", self.name()
            )
        if status == 429 or status >= 500:
            raise NetworkError("REMOTE_HTTP_UNAVAILABLE", f"HTTP {status}", self.name())
        if status >= 400:
            raise ResponseFormatError("REMOTE_HTTP_ERROR", f"HTTP {status}: {_short(response.text)}", self.name())

        text = self._parse_text(response)
        logger.debug("remote transcription ok segment=%s chars=%d", segment_id, len(text))
        return TranscriptionResult(
            segment_id=segment_id,
            text=text,
            confidence=None,
            source="remote_whisper",
        )

    def _parse_text(self, response: Any) -> str:
        try:
            body = response.json()
        except ValueError as e:
            raise ResponseFormatError("REMOTE_INVALID_JSON", f"invalid JSON body: {e}", self.name()) from e
        if not isinstance(body, dict):
            raise ResponseFormatError("REMOTE_INVALID_RESPONSE", "response is not an object", self.name())
        text = body.get("text")
        if not isinstance(text, str):
            raise ResponseFormatError("REMOTE_INVALID_RESPONSE", "response has no 'text' field", self.name())
        return " ".join(text.split()).strip()


def _short(text: Any, limit: int = 200) -> str:
    msg = " ".join(str(text or "").split())
    if len(msg) > limit:
        msg = msg[:limit] + "..."
    return msg
