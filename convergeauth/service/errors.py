from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. Browser-facing flows use the error_code as the ``error``
    query parameter on the login redirect, so codes must never reveal
    whether an account exists.
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidStateError(ServiceError):
    """Anti-forgery state missing, mismatched, expired or already used (400)."""
    status_code = 400
    error_code = "invalid_state"


class ProviderUnavailableError(ServiceError):
    """Identity provider could not be reached or answered non-2xx (502)."""
    status_code = 502
    error_code = "provider_unavailable"


class MissingEmailError(ServiceError):
    """Identity provider assertion carries no email address (400)."""
    status_code = 400
    error_code = "missing_email"


class InvalidCredentialError(ServiceError):
    """Bad one-time code, link, assertion or signature (400)."""
    status_code = 400
    error_code = "invalid_credential"


class NoChallengeError(InvalidCredentialError):
    """No pending WebAuthn challenge for the user (400)."""
    error_code = "no_challenge"


class CounterRegressionError(InvalidCredentialError):
    """Authenticator signature counter did not increase (400)."""
    error_code = "counter_regression"


class ExpiredError(ServiceError):
    """One-time code or link is past its expiry (400)."""
    status_code = 400
    error_code = "expired"


class TooManyAttemptsError(ServiceError):
    """Attempt budget for a one-time code is exhausted (400)."""
    status_code = 400
    error_code = "too_many_attempts"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class VerificationRequiredError(ForbiddenError):
    """Caller is identified but must re-prove control of the account (403)."""
    error_code = "verification_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "ProviderUnavailableError",
    "MissingEmailError",
    "InvalidCredentialError",
    "NoChallengeError",
    "CounterRegressionError",
    "ExpiredError",
    "TooManyAttemptsError",
    "AuthenticationError",
    "ForbiddenError",
    "VerificationRequiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
