from __future__ import annotations

"""
Error taxonomy shared by the session pipeline and the HTTP layer.

Design intent:
- Client errors are surfaced immediately and never retried (4xx).
- Dependency errors fail one unit of work only; counters keep advancing.
- Best-effort failures (summaries) never reach this hierarchy; they are logged.
"""

from typing import Any, Optional


class ScribeError(Exception):
    status_code: int = 500
    code: str = "INTERNAL"

    def __init__(self, message: str, *, detail: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


class ClientError(ScribeError):
    status_code = 400
    code = "CLIENT_ERROR"


class Unauthorized(ClientError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ClientError):
    status_code = 403
    code = "FORBIDDEN"


class SessionNotFound(ClientError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidInput(ClientError):
    code = "INVALID_INPUT"


class NoSegmentData(ClientError):
    """The uploaded segment bytes could not be found or read back."""

    code = "NO_DATA"


class SessionNotActive(ClientError):
    status_code = 409
    code = "NOT_ACTIVE"


class AlreadyCompleted(ClientError):
    status_code = 409
    code = "ALREADY_COMPLETED"


class NotCompleted(ClientError):
    status_code = 409
    code = "NOT_COMPLETED"


class EmptyTranscript(ClientError):
    status_code = 409
    code = "EMPTY_TRANSCRIPT"


class DependencyError(ScribeError):
    status_code = 502
    code = "DEPENDENCY_FAILED"


class ProcessingFailed(DependencyError):
    code = "PROCESSING_FAILED"


class AnswerGenerationFailed(DependencyError):
    code = "GENERATION_FAILED"


def rate_limited(error: DependencyError) -> DependencyError:
    """Mark a dependency error as upstream throttling so clients can back off."""
    error.status_code = 429
    error.detail.setdefault("retryable", True)
    return error
