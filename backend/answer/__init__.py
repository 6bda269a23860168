"""
Question answering boundary for the scribe backend.

Design intent:
- Answer questions about frozen or live transcripts as a token stream.
- Keep the pre-stream and in-stream error paths distinct.
- Release upstream generation resources as soon as the caller goes away.
"""
