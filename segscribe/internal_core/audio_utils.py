from __future__ import annotations

import math
import shutil
import subprocess
import uuid
import wave
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

import numpy as np
from scipy.signal import lfilter, resample_poly


TARGET_SAMPLE_RATE = 16000
HIGH_PASS_CUTOFF_HZ = 80.0
NORMALIZE_TARGET_PEAK = 0.8
VAD_RMS_THRESHOLD = 0.002

_SILENT_PEAK = 1e-9
_PCM_DTYPES = {1: np.uint8, 2: np.dtype("<i2"), 4: np.dtype("<i4")}
_PCM_SCALE = {1: 128.0, 2: 32768.0, 3: 2147483648.0, 4: 2147483648.0}


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


class AudioFormatError(ValueError):
    """Audio cannot be represented in (or converted to) the target format."""


class AudioDataError(ValueError):
    """Audio buffer carries no channel data."""


def load_wav_info(path: Path) -> Tuple[float, int, int]:
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels


def load_wav_float32(path: Path) -> Tuple[np.ndarray, int]:
    """Read a PCM WAV into float32 samples shaped ``(frames, channels)``."""
    try:
        with wave.open(str(path), "rb") as wf:
            channels = wf.getnchannels()
            rate = wf.getframerate()
            width = wf.getsampwidth()
            frames = wf.getnframes()
            raw = wf.readframes(frames)
    except (EOFError, wave.Error) as e:
        raise AudioFormatError(f"Unreadable WAV {path}: {e}") from e
    if width not in _PCM_SCALE:
        raise AudioFormatError(f"Unsupported PCM sample width: {width} bytes")
    if channels < 1:
        raise AudioDataError(f"No channel data in {path}")

    if width == 3:
        # Packed 24-bit little-endian: shift each sample into the top of an int32.
        packed = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3)
        widened = np.zeros((packed.shape[0], 4), dtype=np.uint8)
        widened[:, 1:] = packed
        pcm = widened.view("<i4").reshape(-1)
    else:
        pcm = np.frombuffer(raw, dtype=_PCM_DTYPES[width])
    if width == 1:
        audio = (pcm.astype(np.float32) - 128.0) / _PCM_SCALE[1]
    else:
        audio = pcm.astype(np.float32) / _PCM_SCALE[width]
    audio = audio.clip(-1.0, 1.0).reshape(-1, channels)
    return audio, rate


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def has_voice(audio: np.ndarray, threshold: float = VAD_RMS_THRESHOLD) -> bool:
    """Energy gate: True when the buffer's RMS is above ``threshold``."""
    audio = np.asarray(audio)
    if audio.size == 0:
        return False
    return compute_rms(audio) > threshold


def _as_float_frames(samples: Union[np.ndarray, Iterable[float]]) -> np.ndarray:
    try:
        audio = np.asarray(samples, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise AudioFormatError(f"Samples are not numeric PCM: {e}") from e
    if audio.ndim == 1:
        audio = audio.reshape(-1, 1)
    elif audio.ndim != 2:
        raise AudioFormatError(f"Expected (frames,) or (frames, channels), got shape {audio.shape}")
    if audio.shape[1] == 0 or audio.shape[0] == 0:
        raise AudioDataError("No channel data present")
    return audio


def downmix_to_mono(audio: np.ndarray) -> np.ndarray:
    frames = _as_float_frames(audio)
    if frames.shape[1] == 1:
        return frames[:, 0].copy()
    return frames.mean(axis=1).astype(np.float32)


def resample(audio: np.ndarray, source_rate: int, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    if source_rate <= 0 or target_rate <= 0:
        raise AudioFormatError(f"Invalid sample rate conversion {source_rate}Hz -> {target_rate}Hz")
    mono = np.asarray(audio, dtype=np.float32)
    if source_rate == target_rate:
        return mono
    g = math.gcd(int(source_rate), int(target_rate))
    up = int(target_rate) // g
    down = int(source_rate) // g
    return resample_poly(mono, up, down).astype(np.float32)


def high_pass_filter(
    audio: np.ndarray,
    sample_rate: int,
    cutoff_hz: float = HIGH_PASS_CUTOFF_HZ,
) -> np.ndarray:
    """Single-pole high-pass: y[n] = a * (y[n-1] + x[n] - x[n-1]), zero initial state."""
    if sample_rate <= 0:
        raise AudioFormatError(f"Invalid sample rate: {sample_rate}")
    rc = 1.0 / (2.0 * math.pi * cutoff_hz)
    dt = 1.0 / float(sample_rate)
    alpha = rc / (rc + dt)
    x = np.asarray(audio, dtype=np.float64)
    y = lfilter([alpha, -alpha], [1.0, -alpha], x)
    return y.astype(np.float32)


def normalize_peak(audio: np.ndarray, target_peak: float = NORMALIZE_TARGET_PEAK) -> np.ndarray:
    audio = np.asarray(audio, dtype=np.float32)
    if audio.size == 0:
        return audio
    peak = float(np.max(np.abs(audio)))
    if peak <= _SILENT_PEAK:
        return audio
    return (audio * (target_peak / peak)).astype(np.float32)


def preprocess_audio(samples: np.ndarray, sample_rate: int) -> np.ndarray:
    """
    Condition a PCM buffer for transcription.

    Downmix to mono, resample to 16kHz, remove DC/rumble below ~80Hz and
    peak-normalize to 0.8. Returns a new float32 mono buffer at 16kHz.
    """
    if sample_rate <= 0:
        raise AudioFormatError(f"Invalid sample rate: {sample_rate}")
    mono = downmix_to_mono(samples)
    converted = resample(mono, sample_rate, TARGET_SAMPLE_RATE)
    if converted.size == 0:
        raise AudioFormatError("Resampled buffer is empty")
    filtered = high_pass_filter(converted, TARGET_SAMPLE_RATE)
    return normalize_peak(filtered)


def write_wav16k_mono_float32(path: Path, audio: np.ndarray) -> None:
    write_pcm_wav(path, audio, TARGET_SAMPLE_RATE)


def write_pcm_wav(
    path: Path,
    audio: Union[np.ndarray, Iterable[np.ndarray]],
    sample_rate: int,
) -> None:
    """Write float PCM (a buffer or a sequence of captured buffers) as 16-bit WAV."""
    if sample_rate <= 0:
        raise AudioFormatError(f"Invalid sample rate: {sample_rate}")
    if isinstance(audio, np.ndarray):
        frames = audio
    else:
        buffers = [np.asarray(b, dtype=np.float32) for b in audio]
        if not buffers:
            raise AudioDataError("No captured buffers to write")
        frames = np.concatenate(buffers, axis=0)
    frames = np.asarray(frames, dtype=np.float32)
    if frames.ndim == 1:
        frames = frames.reshape(-1, 1)
    if frames.ndim != 2 or frames.shape[1] == 0:
        raise AudioFormatError(f"Cannot write buffer with shape {frames.shape}")
    audio_i16 = (frames.clip(-1.0, 1.0) * 32767.0).round().astype("<i2")
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(int(frames.shape[1]))
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(audio_i16.tobytes())


def preprocess_wav_file(input_path: Path, output_path: Path) -> Path:
    audio, rate = load_wav_float32(input_path)
    processed = preprocess_audio(audio, rate)
    write_wav16k_mono_float32(output_path, processed)
    return output_path


def ensure_wav(input_path: Path, tmp_dir: Path, prefix: str) -> Path:
    """
    Return a PCM WAV path for ``input_path``.

    WAV input is returned unchanged. Anything else (m4a, mp3, ...) is decoded to
    a 16kHz mono 16-bit WAV under ``tmp_dir``; the caller owns and removes that
    copy. Prefers ffmpeg when present, otherwise decodes with ``miniaudio``.
    """
    if input_path.suffix.lower() == ".wav":
        return input_path

    tmp_dir.mkdir(parents=True, exist_ok=True)
    out_path = tmp_dir / f"{prefix}_converted_{uuid.uuid4().hex}.wav"

    ffmpeg = _which("ffmpeg")
    if ffmpeg:
        cmd = [
            ffmpeg,
            "-y",
            "-i",
            str(input_path),
            "-ac",
            "1",
            "-ar",
            str(TARGET_SAMPLE_RATE),
            "-c:a",
            "pcm_s16le",
            str(out_path),
        ]
        try:
            subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            return out_path
        except subprocess.CalledProcessError as e:
            out_path.unlink(missing_ok=True)
            stderr = e.stderr.decode("utf-8", "ignore") if isinstance(e.stderr, (bytes, bytearray)) else str(e.stderr)
            raise AudioFormatError(f"Audio conversion failed via ffmpeg: {stderr.strip() or 'unknown error'}") from e

    try:
        import miniaudio  # type: ignore
    except ImportError as e:
        raise AudioFormatError(
            f"Cannot decode {input_path.suffix} recordings without a decoder. "
            "Install `ffmpeg` or the Python dependency `miniaudio`."
        ) from e

    try:
        decoded = miniaudio.decode_file(
            str(input_path),
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=1,
            sample_rate=TARGET_SAMPLE_RATE,
        )
    except (miniaudio.MiniaudioError, OSError) as e:
        raise AudioFormatError(f"Audio conversion failed for {input_path.name}: {e}") from e

    # SIGNED16 samples arrive as array('h').
    with wave.open(str(out_path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(TARGET_SAMPLE_RATE)
        wf.writeframes(decoded.samples.tobytes())
    return out_path
