from __future__ import annotations

import logging
import wave
from pathlib import Path
from typing import Iterator, Optional

from .contracts import SegmentRecord

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_SECONDS = 30.0


class SegmentationError(OSError):
    """A slice could not be read or written; remaining cuts are abandoned."""

    def __init__(self, message: str, *, segments_written: int = 0):
        super().__init__(message)
        self.segments_written = segments_written


def segment_artifact_name(recording_id: str, index: int, suffix: str = ".wav") -> str:
    return f"segment-{recording_id}-{index}{suffix}"


def segment_artifact_path(out_dir: Path, recording_id: str, index: int) -> Path:
    return out_dir / segment_artifact_name(recording_id, index)


def iter_segments(
    recording_path: Path,
    recording_id: str,
    out_dir: Path,
    segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
    session_id: Optional[str] = None,
) -> Iterator[SegmentRecord]:
    """
    Cut a finished WAV recording into fixed-length slices.

    Each slice is written and closed before its record is yielded, so callers can
    start transcribing segment 0 while later slices are still being cut. Offsets
    come from frame positions: slices tile [0, duration) and the last one ends at
    the recording's duration.
    """
    if segment_seconds <= 0:
        raise ValueError("segment_seconds must be > 0")

    written = 0
    try:
        wf = wave.open(str(recording_path), "rb")
    except (OSError, EOFError, wave.Error) as e:
        raise SegmentationError(f"Cannot open recording {recording_path}: {e}", segments_written=written) from e

    with wf:
        nchannels = wf.getnchannels()
        sampwidth = wf.getsampwidth()
        framerate = wf.getframerate()
        nframes = wf.getnframes()
        if framerate <= 0:
            raise SegmentationError(f"Recording {recording_path} has no frame rate", segments_written=written)

        total_duration = nframes / float(framerate)
        frames_per_segment = max(1, int(round(segment_seconds * framerate)))
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SegmentationError(f"Cannot create segment dir {out_dir}: {e}", segments_written=written) from e

        index = 0
        start_frame = 0
        while start_frame < nframes:
            end_frame = min(nframes, start_frame + frames_per_segment)
            segment_path = segment_artifact_path(out_dir, recording_id, index)
            try:
                wf.setpos(start_frame)
                raw = wf.readframes(end_frame - start_frame)
                with wave.open(str(segment_path), "wb") as out_wf:
                    out_wf.setnchannels(nchannels)
                    out_wf.setsampwidth(sampwidth)
                    out_wf.setframerate(framerate)
                    out_wf.writeframes(raw)
            except (OSError, wave.Error) as e:
                raise SegmentationError(
                    f"Failed writing segment {index} of {recording_id}: {e}", segments_written=written
                ) from e

            start_sec = start_frame / float(framerate)
            end_sec = min(end_frame / float(framerate), total_duration)
            logger.debug(
                "segment written recording=%s index=%d window=%.3f-%.3f",
                recording_id,
                index,
                start_sec,
                end_sec,
            )
            written += 1
            yield SegmentRecord(
                session_id=session_id,
                index=index,
                start_sec=start_sec,
                end_sec=end_sec,
                status="pending",
                retry_count=0,
                audio_path=str(segment_path),
            )
            start_frame = end_frame
            index += 1
