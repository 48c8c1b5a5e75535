from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code`` a
    web layer should answer with:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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

    def to_dict(self) -> dict:
        payload: dict = {"code": self.error_code, "message": self.message}
        if self.detail:
            payload["details"] = self.detail
        return payload


class ValidationError(ServiceError):
    """Malformed input, rejected before touching any store (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class InvalidSignatureError(AuthenticationError):
    error_code = "invalid_signature"


class MalformedTokenError(AuthenticationError):
    error_code = "malformed_token"


class InvalidRefreshTokenError(AuthenticationError):
    pass


class RefreshTokenExpiredError(InvalidRefreshTokenError):
    error_code = "token_expired"


class ReuseDetectedError(InvalidRefreshTokenError):
    """A rotated refresh token was presented again.

    Surfaces to the caller as a plain ``unauthorized`` so a replaying client
    learns nothing beyond "log in again"; the family is already revoked.
    """

    error_code = "unauthorized"

    def __init__(self, message: str = "refresh token is no longer valid", *, family_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.family_id = family_id


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotVerifiedError(ForbiddenError):
    error_code = "not_verified"


class AccountBlockedError(ForbiddenError):
    error_code = "blocked"


class StaleTokenError(ForbiddenError):
    """Access token was issued before the account's last token-version bump."""
    error_code = "stale_token"


class NotFoundError(ServiceError):
    """Unknown account or OTP reference (404)."""
    status_code = 404
    error_code = "not_found"


class OtpNotFoundError(NotFoundError):
    error_code = "otp_not_found"


class OtpExpiredError(ValidationError):
    error_code = "otp_expired"


class OtpMismatchError(ValidationError):
    error_code = "otp_mismatch"

    def __init__(self, message: str = "code does not match", *, attempts_remaining: int = 0) -> None:
        super().__init__(message, detail={"attempts_remaining": attempts_remaining})
        self.attempts_remaining = attempts_remaining


class ConflictError(ServiceError):
    """Resource conflict, e.g. email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 0, detail: Optional[dict] = None) -> None:
        merged = {"retry_after": retry_after, **(detail or {})}
        super().__init__(message, detail=merged)
        self.retry_after = retry_after


class OtpAttemptsExceededError(RateLimitedError):
    error_code = "otp_attempts_exceeded"


class ServiceUnavailableError(ServiceError):
    """A backing store failed or timed out; the request was denied (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "InvalidRefreshTokenError",
    "RefreshTokenExpiredError",
    "ReuseDetectedError",
    "ForbiddenError",
    "AccountNotVerifiedError",
    "AccountBlockedError",
    "StaleTokenError",
    "NotFoundError",
    "OtpNotFoundError",
    "OtpExpiredError",
    "OtpMismatchError",
    "ConflictError",
    "RateLimitedError",
    "OtpAttemptsExceededError",
    "ServiceUnavailableError",
]
