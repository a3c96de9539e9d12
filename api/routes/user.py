"""
api/routes/user.py -- Account and session REST endpoints.

Routes:
  POST /user/send-code                   -- email an ACTIVATION code
  POST /user/register                    -- create + activate account with the code
  POST /user/login                       -- password login; returns bearer token
  POST /user/logout                      -- revoke the presented token (idempotent)
  POST /user/forgot-password/send-code   -- email a PASSWORD_RESET code
  POST /user/forgot-password/reset       -- set a new password with the code
  GET  /user/info                        -- current user (requires auth)
  GET  /user/token-blacklist-status      -- revoked-token count (requires auth)

Handlers are thin: request models have already applied every format gate,
and the gateway raises AuthError subclasses that api/main.py renders into the
ErrorResponse envelope. Handlers are plain `def` -- the gateway does blocking
bcrypt, SQLite and SMTP work, so FastAPI runs them in its threadpool.

Security:
  [H2] login and both send-code endpoints are also rate-limited per client
       address (slowapi), on top of the per-identity limits in the gateway.
  [C1] gateway.login() provides timing equalization for unknown usernames.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    BlacklistStatusResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SendCodeRequest,
    TokenResponse,
    UserInfoResponse,
)
from auth.dependencies import get_bearer_token, get_current_user, get_gateway
from auth.gateway import AuthGateway
from auth.models import User
from core.config import get_settings

# Auth policy:
# - everything except the two GET routes and POST /user/logout is public
# - POST /user/logout needs a structurally valid token, not a usable one
router = APIRouter(prefix="/user")
logger = logging.getLogger("strmauth.api.user")


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _send_code_limit() -> str:
    return get_settings().send_code_rate_limit


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_send_code_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/send-code", response_model=MessageResponse)
def send_code(
    request: Request,
    body: SendCodeRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    """Send an activation code to an email that has no active account yet."""
    gateway.send_registration_code(body.email)
    return MessageResponse(message="Verification code sent.")


@router.post("/register", response_model=MessageResponse)
def register(body: RegisterRequest, gateway: AuthGateway = Depends(get_gateway)) -> MessageResponse:
    gateway.register(body.email, body.username, body.password, body.code)
    return MessageResponse(message="Account created.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2]
@router.post("/login", response_model=TokenResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> TokenResponse:
    """Authenticate with username and password; return a bearer token.

    Unknown username, wrong password and inactive account all produce the
    same invalid_credentials error.
    """
    issued = gateway.login(body.username, body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        access_token=issued.token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=round(issued.expires_at - issued.issued_at),
    )


@router.post("/logout", response_model=MessageResponse)
def logout(token: str = Depends(get_bearer_token), gateway: AuthGateway = Depends(get_gateway)) -> MessageResponse:
    """Revoke the presented token. Expired or already revoked tokens succeed too."""
    gateway.logout(token)
    return MessageResponse(message="Logged out.")


@router.get("/info", response_model=UserInfoResponse)
def info(current_user: User = Depends(get_current_user)) -> UserInfoResponse:
    """Return identity information for the currently authenticated user."""
    return UserInfoResponse(
        id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        created_at=current_user.created_at,
    )


@router.get("/token-blacklist-status", response_model=BlacklistStatusResponse)
def token_blacklist_status(
    current_user: User = Depends(get_current_user),
    gateway: AuthGateway = Depends(get_gateway),
) -> BlacklistStatusResponse:
    """Report how many revoked tokens are currently held. Monitoring only."""
    size = gateway.blacklist.count()
    logger.info("Blacklist status requested by user id=%s: size=%d", current_user.id, size)
    return BlacklistStatusResponse(blacklist_size=size, timestamp=int(time.time()))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_send_code_limit)  # [H2]
@router.post("/forgot-password/send-code", response_model=MessageResponse)
def forgot_password_send_code(
    request: Request,
    body: SendCodeRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    gateway.send_reset_code(body.email)
    return MessageResponse(message="Verification code sent.")


@router.post("/forgot-password/reset", response_model=MessageResponse)
def forgot_password_reset(
    body: ResetPasswordRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    """Set a new password. A consumed code cannot be reused; request a new one."""
    gateway.reset_password(body.email, body.code, body.new_password)
    return MessageResponse(message="Password updated.")
