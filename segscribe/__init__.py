"""
segscribe backend package.

Design intent:
- Turn finished recordings into fixed-length segments and transcribe them.
- Prefer the remote provider, fall back to the on-device engine when it keeps failing.
"""
