"""
auth/tokens.py -- Signed session tokens (TokenIssuer).

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (user id), username, iat, exp and jti. Nothing about the token is
       stored at issue time; validity is signature + expiry + blacklist.

  jti: uuid4 hex, 122 random bits from os.urandom -- unique per token and
       unguessable, so a blacklist entry can never collide with a live token.

  iat: float seconds. Subject revocations compare iat against a cutoff, and
       whole-second precision would let a token minted in the same second as
       a password reset survive (or kill the one minted right after it).

  Expiry is checked here against the injected clock, not by python-jose,
  so tests can move time without sleeping and every verify() re-checks it.

  SECRET_KEY: passed in by the caller. core.config.Settings validates it at
       startup (minimum 32 chars, generated only in DEBUG mode) [M6].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from jose import JWTError, jwt

from auth.blacklist import TokenBlacklist
from auth.errors import TokenExpiredError, TokenMalformedError, TokenRevokedError
from auth.models import IssuedToken, TokenClaims

logger = logging.getLogger("strmauth.tokens")

_ALGORITHM = "HS256"


class TokenIssuer:
    """Mints and checks session tokens.

    Usage:
        issuer = TokenIssuer(secret_key, blacklist, lifetime_seconds=43200)
        issued = issuer.issue(user_id=1, username="alice")
        claims = issuer.verify(issued.token)   # raises on Malformed/Expired/Revoked
    """

    def __init__(
        self,
        secret_key: str,
        blacklist: TokenBlacklist,
        *,
        lifetime_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_key = secret_key
        self.blacklist = blacklist
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def issue(self, user_id: int, username: str) -> IssuedToken:
        issued_at = self._clock()
        expires_at = issued_at + self.lifetime_seconds
        token_id = uuid.uuid4().hex
        payload = {
            "sub": str(user_id),
            "username": username,
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return IssuedToken(
            token=token,
            token_id=token_id,
            subject=user_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def decode(self, token: str) -> TokenClaims:
        """Check the signature and claim structure only.

        Raises TokenMalformedError for a bad signature, wrong algorithm or
        missing/ill-typed claims. Expiry and revocation are NOT checked --
        logout uses this so an expired or revoked token can still be revoked.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise TokenMalformedError() from exc
        try:
            return TokenClaims(
                subject=int(payload["sub"]),
                username=str(payload["username"]),
                token_id=str(payload["jti"]),
                issued_at=float(payload["iat"]),
                expires_at=float(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError() from exc

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a usable token.

        Order: Malformed, then Expired, then Revoked. Both expiry and the
        blacklist are consulted on every call; nothing is cached.
        """
        claims = self.decode(token)
        if self._clock() >= claims.expires_at:
            raise TokenExpiredError()
        if self.blacklist.is_revoked(claims.token_id, claims.subject, claims.issued_at):
            logger.info("Rejected revoked token %s (subject=%s)", claims.token_id[:8], claims.subject)
            raise TokenRevokedError()
        return claims
