from .config import TranscriptionConfig, load_config
from .segment_store import InMemorySegmentStore

__all__ = ["TranscriptionConfig", "load_config", "InMemorySegmentStore"]
