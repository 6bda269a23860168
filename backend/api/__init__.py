"""
API orchestration boundary for the scribe backend.

Design intent:
- Expose thin, typed endpoints for session, segment and question flows.
- Keep request validation explicit and failure modes predictable.
- Orchestrate modules without embedding domain logic in routers.
"""
