"""
API orchestration boundary for segscribe.

Design intent:
- Expose thin, typed endpoints over the transcription orchestrator.
- Keep lifecycle/retry policy inside internal_core, never in routers.
"""
