"""
Recording session boundary for the scribe backend.

Design intent:
- Own the session lifecycle: accept segments, drain, finalize, summarize.
- Rebuild transcript order from submission order, never completion order.
- Keep per-session state behind per-session locks only.
"""
