from __future__ import annotations

from typing import Optional

# Single client-facing message for every failed token redemption
INVALID_TOKEN_MESSAGE = "Invalid token or token expired"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - delivery_failed (502)
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

    @property
    def public_message(self) -> str:
        """Message safe to show to the caller."""
        return self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Token re-issued before the resend cooldown elapsed (429)."""
    status_code = 429
    error_code = "rate_limited"


class DeliveryFailedError(ServiceError):
    """The mailer could not deliver a message (502).

    The token written before the send attempt stays valid.
    """
    status_code = 502
    error_code = "delivery_failed"


class InvalidTokenError(ServiceError):
    """Token redemption failed (400).

    Subclasses distinguish the cause internally; callers only ever see
    INVALID_TOKEN_MESSAGE.
    """
    status_code = 400
    error_code = "invalid_token"

    @property
    def public_message(self) -> str:
        return INVALID_TOKEN_MESSAGE


class TokenExpiredError(InvalidTokenError):
    """Token was found but is older than the allowed lifetime."""


class AlreadyVerifiedError(InvalidTokenError):
    """Verification token redeemed for an already verified account."""


__all__ = [
    "INVALID_TOKEN_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DeliveryFailedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "AlreadyVerifiedError",
]
