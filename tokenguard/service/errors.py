from __future__ import annotations

from typing import Optional

RELOGIN_MESSAGE = "Please log in again."


class TokenServiceError(Exception):
    """Base class for token lifecycle errors.

    Every error carries a stable ``error_code`` that callers (e.g. request
    middleware) can switch on, plus a suggested HTTP ``status_code``:
    - token_malformed, token_expired, token_revoked (401)
    - family_invalidated, token_reuse_detected (401)
    - signing_error (500)
    - cache_unavailable, circuit_open, cache_timeout (503)
    - session_not_found (404)
    """

    status_code: int = 401
    error_code: str = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def user_message(self) -> str:
        return RELOGIN_MESSAGE


class TokenMalformed(TokenServiceError):
    """Unparseable token, bad signature, or unexpected claims (401)."""
    error_code = "token_malformed"


class TokenExpired(TokenServiceError):
    """Token lifetime elapsed; refresh or re-authenticate (401)."""
    error_code = "token_expired"


class TokenRevoked(TokenServiceError):
    """Token id is on the blacklist (401)."""
    error_code = "token_revoked"


class FamilyInvalidated(TokenServiceError):
    """Refresh lineage is gone or revoked; full re-authentication required (401)."""
    error_code = "family_invalidated"


class TokenReuseDetected(TokenServiceError):
    """A retired refresh token was replayed. The family has been revoked (401)."""
    error_code = "token_reuse_detected"

    @property
    def user_message(self) -> str:
        return (
            f"{RELOGIN_MESSAGE} For your security all sessions from this "
            "sign-in were ended because a previously used credential was presented again."
        )


class SigningError(TokenServiceError):
    """Token issuance failed (500)."""
    status_code = 500
    error_code = "signing_error"

    @property
    def user_message(self) -> str:
        return "Unable to sign in right now. Please try again."


class CacheUnavailableError(TokenServiceError):
    """The cache backend could not be reached (503)."""
    status_code = 503
    error_code = "cache_unavailable"

    @property
    def user_message(self) -> str:
        return "Service temporarily unavailable. Please try again."


class CacheTimeoutError(CacheUnavailableError):
    """A cache call exceeded its deadline (503)."""
    error_code = "cache_timeout"


class CircuitOpenError(CacheUnavailableError):
    """Call short-circuited because the breaker for the resource is open (503)."""
    error_code = "circuit_open"

    def __init__(self, resource: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit breaker open for {resource}. Retry after {retry_after:.1f}s",
            detail={"resource": resource, "retry_after": round(retry_after, 3)},
        )
        self.resource = resource
        self.retry_after = retry_after


class SessionNotFound(TokenServiceError):
    """Session id is unknown or expired (404)."""
    status_code = 404
    error_code = "session_not_found"


__all__ = [
    "TokenServiceError",
    "TokenMalformed",
    "TokenExpired",
    "TokenRevoked",
    "FamilyInvalidated",
    "TokenReuseDetected",
    "SigningError",
    "CacheUnavailableError",
    "CacheTimeoutError",
    "CircuitOpenError",
    "SessionNotFound",
]
