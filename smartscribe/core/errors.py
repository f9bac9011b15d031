"""
Error taxonomy shared by the service layer and the HTTP adapters.

Services raise these; ``smartscribe.api.main`` turns them into JSON
responses of the form ``{"detail": <message>, "code": <code>}``.
"""

from typing import List, Optional


class SmartScribeError(Exception):
    """Base class for every expected, user-facing failure."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class ValidationError(SmartScribeError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class EmptyAudioError(ValidationError):
    """Uploaded audio is missing or too small to contain speech."""

    code = "empty_audio"


class AuthError(SmartScribeError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(SmartScribeError):
    status_code = 403
    code = "forbidden"


class NotFoundError(SmartScribeError):
    status_code = 404
    code = "not_found"


class ConflictError(SmartScribeError):
    status_code = 409
    code = "conflict"


class LockedError(SmartScribeError):
    status_code = 423
    code = "account_locked"

    def __init__(self, message: str, locked_until: Optional[str] = None):
        super().__init__(message)
        self.locked_until = locked_until


class RateLimitedError(SmartScribeError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(SmartScribeError):
    """An external collaborator (speech-to-text, completion, mail) failed."""

    status_code = 502
    code = "provider_error"


class ProviderTimeoutError(ProviderError):
    status_code = 504
    code = "provider_timeout"


class TranscriptionFailedError(ProviderError):
    """Every filename hint was rejected by the speech-to-text provider."""

    code = "transcription_failed"

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error
