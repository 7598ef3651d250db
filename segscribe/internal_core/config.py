from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_REMOTE_API_URL = "https://api.openai.com/v1/audio/transcriptions"


def _project_root() -> Path:
    # segscribe/internal_core/config.py -> segscribe -> repo root
    return Path(__file__).resolve().parents[2]


def _resolve_default_path(candidates: list[Path]) -> str:
    for candidate in candidates:
        try:
            resolved = candidate.expanduser().resolve()
        except Exception:
            continue
        if resolved.exists():
            return str(resolved)
    # Keep deterministic fallback even when file is absent.
    if candidates:
        return str(candidates[0].expanduser().resolve())
    return ""


def _model_root_from_env() -> Optional[Path]:
    raw = os.getenv("SCRIBE_MODEL_ROOT", "").strip()
    if not raw:
        return None
    try:
        return Path(raw).expanduser().resolve()
    except Exception:
        return None


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class TranscriptionConfig:
    SCRIBE_SEGMENT_SECONDS: float
    SCRIBE_MAX_RETRIES: int
    SCRIBE_USE_PREPROCESSING: bool
    SCRIBE_API_TIMEOUT_SECONDS: float
    SCRIBE_BATCH_SIZE: int
    SCRIBE_VAD_ENABLED: bool
    SCRIBE_VAD_RMS_THRESHOLD: float
    SCRIBE_WHISPER_MODEL: str
    SCRIBE_RESPONSE_FORMAT: str
    SCRIBE_TEMPERATURE: float
    SCRIBE_LANGUAGE: Optional[str]
    SCRIBE_LOCAL_FALLBACK_ENABLED: bool
    SCRIBE_FALLBACK_THRESHOLD: int
    SCRIBE_REMOTE_API_URL: str
    SCRIBE_REMOTE_API_KEY: str
    SCRIBE_WHISPER_CPP_BIN: str
    SCRIBE_WHISPER_CPP_MODEL: str
    SCRIBE_WHISPER_CPP_NO_GPU: bool
    SCRIBE_TMP_DIR: str
    SCRIBE_STORE_PATH: str
    SCRIBE_NETWORK_PROBE_HOST: str
    SCRIBE_NETWORK_PROBE_PORT: int
    SCRIBE_NETWORK_PROBE_INTERVAL_SECONDS: float
    SCRIBE_LOG_LEVEL: str

    def tmp_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root if repo_root is not None else _project_root()
        return (root / self.SCRIBE_TMP_DIR).resolve()

    def store_path(self) -> Optional[Path]:
        raw = (self.SCRIBE_STORE_PATH or "").strip()
        if not raw:
            return None
        return Path(raw).expanduser().resolve()

    def validate(self) -> None:
        if self.SCRIBE_SEGMENT_SECONDS <= 0:
            raise ValueError("SCRIBE_SEGMENT_SECONDS must be > 0")
        if self.SCRIBE_MAX_RETRIES < 1:
            raise ValueError("SCRIBE_MAX_RETRIES must be >= 1")
        if self.SCRIBE_BATCH_SIZE < 1:
            raise ValueError("SCRIBE_BATCH_SIZE must be >= 1")
        if self.SCRIBE_FALLBACK_THRESHOLD < 1:
            raise ValueError("SCRIBE_FALLBACK_THRESHOLD must be >= 1")
        if self.SCRIBE_API_TIMEOUT_SECONDS <= 0:
            raise ValueError("SCRIBE_API_TIMEOUT_SECONDS must be > 0")


def load_config() -> TranscriptionConfig:
    project_root = _project_root()
    model_root = _model_root_from_env()

    model_prefixes: list[Path] = []
    if model_root is not None:
        model_prefixes.append(model_root)
    model_prefixes.extend([project_root, project_root / "models", project_root.parent])

    default_whisper_bin = _resolve_default_path(
        [
            base / "whisper.cpp" / "build" / "bin" / "whisper-cli"
            for base in model_prefixes
        ]
    )
    default_whisper_model = _resolve_default_path(
        [
            base / "whisper.cpp" / "models" / "ggml-base.en.bin"
            for base in model_prefixes
        ] + [
            base / "ggml-base.en.bin" for base in model_prefixes
        ]
    )

    max_retries = _getenv_int("SCRIBE_MAX_RETRIES", 5)

    cfg = TranscriptionConfig(
        SCRIBE_SEGMENT_SECONDS=_getenv_float("SCRIBE_SEGMENT_SECONDS", 30.0),
        SCRIBE_MAX_RETRIES=max_retries,
        SCRIBE_USE_PREPROCESSING=_getenv_bool("SCRIBE_USE_PREPROCESSING", True),
        SCRIBE_API_TIMEOUT_SECONDS=_getenv_float("SCRIBE_API_TIMEOUT_SECONDS", 30.0),
        SCRIBE_BATCH_SIZE=_getenv_int("SCRIBE_BATCH_SIZE", 3),
        SCRIBE_VAD_ENABLED=_getenv_bool("SCRIBE_VAD_ENABLED", True),
        SCRIBE_VAD_RMS_THRESHOLD=_getenv_float("SCRIBE_VAD_RMS_THRESHOLD", 0.002),
        SCRIBE_WHISPER_MODEL=_getenv_str("SCRIBE_WHISPER_MODEL", "whisper-1"),
        SCRIBE_RESPONSE_FORMAT=_getenv_str("SCRIBE_RESPONSE_FORMAT", "json"),
        SCRIBE_TEMPERATURE=_getenv_float("SCRIBE_TEMPERATURE", 0.0),
        SCRIBE_LANGUAGE=_getenv_opt_str("SCRIBE_LANGUAGE"),
        SCRIBE_LOCAL_FALLBACK_ENABLED=_getenv_bool("SCRIBE_LOCAL_FALLBACK_ENABLED", True),
        SCRIBE_FALLBACK_THRESHOLD=_getenv_int("SCRIBE_FALLBACK_THRESHOLD", max_retries),
        SCRIBE_REMOTE_API_URL=_getenv_str("SCRIBE_REMOTE_API_URL", DEFAULT_REMOTE_API_URL),
        SCRIBE_REMOTE_API_KEY=_getenv_str(
            "SCRIBE_REMOTE_API_KEY",
            _getenv_str("OPENAI_API_KEY", ""),
        ),
        SCRIBE_WHISPER_CPP_BIN=_getenv_str("SCRIBE_WHISPER_CPP_BIN", default_whisper_bin),
        SCRIBE_WHISPER_CPP_MODEL=_getenv_str("SCRIBE_WHISPER_CPP_MODEL", default_whisper_model),
        SCRIBE_WHISPER_CPP_NO_GPU=_getenv_bool("SCRIBE_WHISPER_CPP_NO_GPU", False),
        SCRIBE_TMP_DIR=_getenv_str("SCRIBE_TMP_DIR", "./tmp"),
        SCRIBE_STORE_PATH=_getenv_str("SCRIBE_STORE_PATH", ""),
        SCRIBE_NETWORK_PROBE_HOST=_getenv_str("SCRIBE_NETWORK_PROBE_HOST", "api.openai.com"),
        SCRIBE_NETWORK_PROBE_PORT=_getenv_int("SCRIBE_NETWORK_PROBE_PORT", 443),
        SCRIBE_NETWORK_PROBE_INTERVAL_SECONDS=_getenv_float(
            "SCRIBE_NETWORK_PROBE_INTERVAL_SECONDS", 5.0
        ),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
    )
    cfg.validate()
    return cfg
