"""
auth/errors.py -- Typed errors raised by the authentication protocols.

Protocol services raise these; they never build HTTP responses. The api/
layer owns the transport mapping (JSON envelope for API calls, error
redirects for browser flows) and reads status_code / code from the instance.

message is always safe to show the caller. Anything more detailed belongs in
the server log, not in the exception.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the auth protocols raise."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."
    # Operational errors are expected, user-correctable outcomes.
    is_operational: bool = True
    retryable: bool = False

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationError(AuthError):
    """Malformed input (missing or badly formatted field)."""

    status_code = 400
    code = "validation_error"
    default_message = "Invalid input."


class BadRequestError(AuthError):
    """Well-formed input that is semantically invalid (bad state, too soon)."""

    status_code = 400
    code = "bad_request"
    default_message = "Bad request."


class RateLimitedError(BadRequestError):
    """Too many requests for one identity inside the current window."""

    code = "rate_limited"
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: str | None = None, retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class OAuthError(BadRequestError):
    """The OAuth provider reported an error on the callback."""

    code = "oauth_error"
    default_message = "OAuth authentication failed."


class UnauthorizedError(AuthError):
    """Credential missing, invalid, or expired."""

    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidTokenError(UnauthorizedError):
    """Bearer token failed verification.

    One kind for malformed, tampered and expired tokens alike: the caller
    must not learn which check failed.
    """

    code = "invalid_token"
    default_message = "Invalid or expired token."


class ForbiddenError(AuthError):
    """Credential present and well-formed but not accepted for this resource."""

    status_code = 403
    code = "forbidden"
    default_message = "Forbidden."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class InternalError(AuthError):
    """Downstream or unexpected failure. Retry later; details are in the log."""

    status_code = 500
    code = "internal_error"
    default_message = "Something went wrong. Please try again later."
    is_operational = False
    retryable = True
