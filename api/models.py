"""
API request and response models for the StrmAuth /user endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The format gates live here and run before any route handler: a request that
fails them never reaches the gateway, so it cannot touch a rate-limit counter,
a verification code or a user row. The patterns are checked with Python's `re`
in field validators because the password policy needs lookaheads, which the
Rust engine behind Field(pattern=...) does not support.

Field names are snake_case in Python and camelCase on the wire (aliases), to
match the frontend's payloads.
"""

import re
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from core.config import get_settings

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9一-龥]{3,10}$")
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,16}$", re.ASCII)

_PASSWORD_RULE = (
    "Password must be 8-16 characters with at least one lowercase letter, "
    "one uppercase letter, one digit and one of @$!%*?&."
)


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_PATTERN.fullmatch(value):
        raise ValueError("Invalid email address.")
    return value


def _check_username(value: str) -> str:
    if not USERNAME_PATTERN.fullmatch(value):
        raise ValueError("Username must be 3-10 letters, digits or CJK characters.")
    return value


def _check_password(value: str) -> str:
    if not PASSWORD_PATTERN.fullmatch(value):
        raise ValueError(_PASSWORD_RULE)
    return value


def _check_code(value: str) -> str:
    value = value.strip()
    length = get_settings().code_length
    if len(value) != length or not value.isascii() or not value.isdigit():
        raise ValueError(f"Verification code must be exactly {length} digits.")
    return value


# Annotated types so every request model applies the same gate to a field.
Email = Annotated[str, Field(max_length=255), AfterValidator(_check_email)]
Username = Annotated[str, Field(max_length=64), AfterValidator(_check_username)]
Password = Annotated[str, Field(max_length=64), AfterValidator(_check_password)]
Code = Annotated[str, Field(max_length=16), AfterValidator(_check_code)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SendCodeRequest(BaseModel):
    """Request body for POST /user/send-code and /user/forgot-password/send-code."""

    email: Email


class RegisterRequest(BaseModel):
    """Request body for POST /user/register.

    The model_validator runs after the field gates, so a mismatch is only
    reported for passwords that are individually well-formed.
    """

    model_config = ConfigDict(populate_by_name=True)

    email: Email
    username: Username
    password: Password
    confirm_password: str = Field(alias="confirmPassword", max_length=64)
    code: Code

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /user/login.

    Deliberately no format checks beyond length: a policy error here would
    tell a caller something about which accounts can exist.
    """

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=64)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /user/forgot-password/reset."""

    model_config = ConfigDict(populate_by_name=True)

    email: Email
    code: Code
    new_password: Password = Field(alias="newPassword")
    confirm_password: str = Field(alias="confirmPassword", max_length=64)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenResponse(BaseModel):
    """Response for POST /user/login."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")


class UserInfoResponse(BaseModel):
    """Response for GET /user/info. Never carries the password hash."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    username: str
    email: str
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class BlacklistStatusResponse(BaseModel):
    """Response for GET /user/token-blacklist-status (monitoring only)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    blacklist_size: int = Field(alias="blacklistSize")
    timestamp: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
