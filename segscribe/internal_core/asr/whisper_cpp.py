from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from ..contracts import TranscriptionResult
from .base import ArtifactIOError, EngineUnavailableError, RecognitionError, TranscriptionProvider


def whisper_cpp_available(bin_path: str, model_path: str) -> Tuple[bool, str]:
    if not bin_path:
        return False, "missing SCRIBE_WHISPER_CPP_BIN"
    if not model_path:
        return False, "missing SCRIBE_WHISPER_CPP_MODEL"
    if not Path(bin_path).exists():
        return False, f"whisper-cli not found: {bin_path}"
    if not Path(model_path).exists():
        return False, f"model not found: {model_path}"
    return True, ""


def _with_dyld_paths(bin_path: str, env: Optional[dict[str, str]] = None) -> dict[str, str]:
    env_out = dict(os.environ) if env is None else dict(env)
    if not bin_path:
        return env_out
    try:
        build_dir = Path(bin_path).resolve().parents[1]
    except Exception:
        return env_out

    candidates = [
        build_dir / "src",
        build_dir / "ggml" / "src",
        build_dir / "ggml" / "src" / "ggml-blas",
        build_dir / "ggml" / "src" / "ggml-metal",
    ]
    new_paths = [str(p) for p in candidates if p.exists()]
    if not new_paths:
        return env_out

    existing = env_out.get("DYLD_LIBRARY_PATH", "")
    joined = os.pathsep.join(new_paths)
    env_out["DYLD_LIBRARY_PATH"] = (
        joined if not existing else f"{joined}{os.pathsep}{existing}"
    )
    return env_out


class WhisperCppProvider(TranscriptionProvider):
    """On-device fallback engine: one whisper.cpp CLI run per segment."""

    def __init__(
        self,
        bin_path: str,
        model_path: str,
        no_gpu: bool = False,
        language: Optional[str] = None,
        timeout_sec: float = 30.0,
    ):
        self._bin_path = bin_path
        self._model_path = model_path
        self._no_gpu = bool(no_gpu)
        self._language = language or "en"
        self._timeout_sec = timeout_sec

    def name(self) -> str:
        return "whisper_cpp"

    def is_available(self) -> bool:
        ok, _ = whisper_cpp_available(self._bin_path, self._model_path)
        return ok

    def transcribe(self, audio_path: str, segment_id: str = "") -> TranscriptionResult:
        ok, reason = whisper_cpp_available(self._bin_path, self._model_path)
        if not ok:
            raise EngineUnavailableError("WHISPER_UNAVAILABLE", reason, self.name())
        if not Path(audio_path).exists():
            raise ArtifactIOError("ARTIFACT_MISSING", f"segment audio not found: {audio_path}", self.name())

        # Capture stdout (no output files) and keep logs clean.
        cmd = [
            self._bin_path,
            "-m",
            self._model_path,
            "-f",
            audio_path,
            "-l",
            self._language,
            "--no-timestamps",
            "--no-prints",
        ]
        if self._no_gpu:
            cmd.insert(1, "-ng")

        try:
            res = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self._timeout_sec,
                env=_with_dyld_paths(self._bin_path),
            )
        except subprocess.TimeoutExpired as e:
            raise RecognitionError("WHISPER_TIMEOUT", f"whisper.cpp timed out after {self._timeout_sec}s", self.name()) from e
        except OSError as e:
            raise EngineUnavailableError("WHISPER_EXEC_FAILED", str(e), self.name()) from e

        if res.returncode != 0:
            msg = (res.stderr or "").strip() or f"exit_code={res.returncode}"
            if len(msg) > 200:
                msg = msg[:200] + "..."
            raise RecognitionError("WHISPER_EXIT_NONZERO", msg, self.name())

        text_out = " ".join((res.stdout or "").split()).strip()
        if not text_out:
            raise RecognitionError("WHISPER_EMPTY_OUTPUT", "whisper.cpp returned empty output", self.name())

        return TranscriptionResult(
            segment_id=segment_id,
            text=text_out,
            confidence=None,
            source="whisper_cpp",
        )
