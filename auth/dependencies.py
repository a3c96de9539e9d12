"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Session tokens travel in the Authorization: Bearer <token> header only. There
is no cookie path: the client is a separate frontend that stores the token
itself.

get_bearer_token() extracts the raw token (TokenMalformedError when absent).
get_current_user() verifies it through the gateway on every request --
signature, expiry and blacklist are re-checked each time, never cached.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import TokenMalformedError
from auth.gateway import AuthGateway
from auth.models import User


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def get_bearer_token(request: Request) -> str:
    """Return the token from the Authorization header.

    Raises TokenMalformedError if the header is missing or not a Bearer token.
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise TokenMalformedError()
    return token


def get_current_user(
    token: str = Depends(get_bearer_token),
    gateway: AuthGateway = Depends(get_gateway),
) -> User:
    """Require a usable session token. Use as a FastAPI dependency:

        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    return gateway.current_user(token)
