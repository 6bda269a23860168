"""
Scribe backend package.

Design intent:
- Turn browser-recorded audio segments into an ordered, summarized transcript.
- Keep domain modules (session/answer/llm/internal_core) independent of the HTTP layer.
"""
