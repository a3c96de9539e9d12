"""
auth/errors.py -- Stable error kinds raised by the authentication core.

Every failure the gateway can report is a subclass of AuthError carrying an
HTTP status_code and a machine-readable code. api/main.py renders them into
the ErrorResponse envelope; non-HTTP callers (main.py) print the message.

Kinds fall into five groups:
  client input    InvalidFormat, Conflict, NotFound
  throttling      RateLimited (retry_after seconds disclosed)
  one-time codes  CodeExpired, CodeAlreadyUsed, CodeMismatch, CodeSuperseded
  authorization   InvalidCredentials, TokenMalformed, TokenExpired, TokenRevoked
  infrastructure  Unavailable, DispatchFailed

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors with a stable code and HTTP status."""

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class InvalidFormatError(AuthError):
    status_code = 422
    code = "invalid_format"
    default_message = "Request validation failed."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "An account with that username or email already exists."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Account not found."


class RateLimitedError(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests."

    def __init__(self, message: str | None = None, *, retry_after: int = 60, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))


# ---------------------------------------------------------------------------
# One-time code errors -- all of them require a fresh code
# ---------------------------------------------------------------------------


class CodeError(AuthError):
    status_code = 400


class CodeExpiredError(CodeError):
    code = "code_expired"
    default_message = "Verification code has expired. Request a new one."


class CodeAlreadyUsedError(CodeError):
    code = "code_already_used"
    default_message = "Verification code has already been used."


class CodeMismatchError(CodeError):
    code = "code_mismatch"
    default_message = "Verification code is incorrect."


class CodeSupersededError(CodeError):
    code = "code_superseded"
    default_message = "A newer verification code has been issued. Use the latest code."


# ---------------------------------------------------------------------------
# Authentication / authorization errors
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthError):
    """Deliberately the same for unknown user, wrong password and inactive account."""

    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid username or password."


class TokenError(AuthError):
    status_code = 401


class TokenMalformedError(TokenError):
    code = "token_malformed"
    default_message = "Authentication token is missing or invalid."


class TokenExpiredError(TokenError):
    code = "token_expired"
    default_message = "Authentication token has expired."


class TokenRevokedError(TokenError):
    code = "token_revoked"
    default_message = "Authentication token has been revoked."


# ---------------------------------------------------------------------------
# Infrastructure errors -- distinguishable from anything the caller did
# ---------------------------------------------------------------------------


class UnavailableError(AuthError):
    status_code = 503
    code = "unavailable"
    default_message = "Service temporarily unavailable."


class DispatchFailedError(AuthError):
    status_code = 503
    code = "dispatch_failed"
    default_message = "Verification email could not be delivered. Please retry."


__all__ = [
    "AuthError",
    "InvalidFormatError",
    "ConflictError",
    "NotFoundError",
    "RateLimitedError",
    "CodeError",
    "CodeExpiredError",
    "CodeAlreadyUsedError",
    "CodeMismatchError",
    "CodeSupersededError",
    "InvalidCredentialsError",
    "TokenError",
    "TokenMalformedError",
    "TokenExpiredError",
    "TokenRevokedError",
    "UnavailableError",
    "DispatchFailedError",
]
