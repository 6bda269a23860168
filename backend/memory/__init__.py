"""
Standalone transcription memories for the scribe backend.

Design intent:
- Turn one uploaded recording into one owner-scoped text record.
- Share the audio pipeline and error vocabulary with session segments.
"""
