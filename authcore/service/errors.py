from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients switch on. Authentication-state failures keep distinct codes
    so a client can tell "log in again" from "contact support" from
    "wait and retry".
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class OtpVerificationError(ServiceError):
    """Identity provider rejected the OTP (400)."""
    status_code = 400
    error_code = "INVALID_OTP"


class InvalidTokenError(ServiceError):
    """Token is malformed, tampered with, or otherwise unusable.

    Bearer-token verification reports this as 403; the OAuth exchange reports
    a bad provider token as 400.
    """
    status_code = 403
    error_code = "INVALID_TOKEN"


class InvalidRefreshTokenError(ServiceError):
    """Refresh token is unknown (400)."""
    status_code = 400
    error_code = "INVALID_REFRESH_TOKEN"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class TokenExpiredError(AuthenticationError):
    """Access or refresh token is past its expiry (401)."""
    error_code = "TOKEN_EXPIRED"


class TokenRevokedError(AuthenticationError):
    """Token was revoked by logout or rotation (401)."""
    error_code = "TOKEN_REVOKED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class UserInactiveError(ForbiddenError):
    error_code = "USER_INACTIVE"


class UserSuspendedError(ForbiddenError):
    error_code = "USER_SUSPENDED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UserNotRegisteredError(NotFoundError):
    """OAuth identity has no local account; OAuth never auto-registers."""
    error_code = "USER_NOT_FOUND"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    ``retry_after`` seconds is copied into ``detail`` so the HTTP layer can
    emit a ``Retry-After`` header.
    """
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int = 0,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        merged = {**(detail or {}), "retry_after": max(0, int(retry_after))}
        super().__init__(message, detail=merged, error_code=error_code)
        self.retry_after = merged["retry_after"]


class OtpResendTooSoonError(RateLimitedError):
    error_code = "OTP_RESEND_TOO_SOON"


class IdentityProviderError(ServiceError):
    """Upstream identity provider failed or was unreachable (502)."""
    status_code = 502
    error_code = "IDENTITY_PROVIDER_ERROR"


class StoreUnavailableError(ServiceError):
    """A store call missed its deadline (503); the write did not commit."""
    status_code = 503
    error_code = "STORE_UNAVAILABLE"


__all__ = [
    "ServiceError",
    "ValidationError",
    "OtpVerificationError",
    "InvalidTokenError",
    "InvalidRefreshTokenError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "UserInactiveError",
    "UserSuspendedError",
    "NotFoundError",
    "UserNotRegisteredError",
    "RateLimitedError",
    "OtpResendTooSoonError",
    "IdentityProviderError",
    "StoreUnavailableError",
]
