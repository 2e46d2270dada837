"""Error taxonomy for QuickBooks push sync.

Single-entity operations convert these into result dicts via
``error_result``. ConfigurationError and PersistenceError propagate.
"""
from typing import Any, Dict, Optional


class QuickBooksSyncError(Exception):
    """Base class for every error raised by the sync engine."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(QuickBooksSyncError):
    """Missing or invalid credentials/settings. Fatal."""


class AuthorizationError(QuickBooksSyncError):
    """OAuth state, code exchange or token refresh failed."""


class TokenExpiredError(AuthorizationError):
    """Provider rejected the access token (HTTP 401)."""


class MappingError(QuickBooksSyncError):
    """Entity cannot be mapped to a QuickBooks account."""


class ProviderRateLimitError(QuickBooksSyncError):
    """Provider throttled the request (HTTP 429)."""

    retryable = True

    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderApiError(QuickBooksSyncError):
    """Any other provider failure, including timeouts."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(QuickBooksSyncError):
    """Local store failure. Fails the run."""


def error_result(exc: Exception, **extra: Any) -> Dict[str, Any]:
    """Build the uniform failure shape for an exception."""
    result: Dict[str, Any] = {
        "error": True,
        "error_message": getattr(exc, "message", None) or str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, ProviderRateLimitError):
        result["retry_after"] = exc.retry_after
    result.update(extra)
    return result
