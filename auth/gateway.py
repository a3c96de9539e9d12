"""
auth/gateway.py -- The authentication flows (AuthGateway).

The gateway is the only object the HTTP layer and the operator CLI talk to.
It owns no state of its own; each flow consults RateLimiter, delegates to
CodeIssuer / UserStore, and finishes with TokenIssuer or TokenBlacklist.

Flows:
  registration    send_registration_code -> register
  session         login -> current_user* -> logout
  password reset  send_reset_code -> reset_password
  operator        revoke_sessions, deactivate_user, purge_expired

Format checks (username/email/password shape, confirm-password) happen at the
boundary (api/models.py) before any method here runs.

Atomicity:
  register() consumes the ACTIVATION code, inserts the user and activates it
  on ONE connection inside ONE transaction. A Conflict on insert rolls back
  the code consumption too, so the user can fix the username and retry with
  the same code.

  reset_password() cannot do the same: the code is consumed at validation and
  the password update is a separate step. A failure between the two is
  reported as UnavailableError asking for a fresh code; it is never retried
  silently.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.engine import Engine

from auth import passwords
from auth.blacklist import TokenBlacklist
from auth.codes import CodeIssuer
from auth.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    TokenRevokedError,
    UnavailableError,
)
from auth.mailer import CodeDispatcher, SMTPMailer, redact_email
from auth.models import CodePurpose, IssuedToken, RevocationReason, User
from auth.ratelimit import LOGIN, RateLimiter, send_code_action
from auth.store import UserStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("strmauth.gateway")


class AuthGateway:
    def __init__(
        self,
        *,
        users: UserStore,
        codes: CodeIssuer,
        limiter: RateLimiter,
        tokens: TokenIssuer,
        blacklist: TokenBlacklist,
        bcrypt_rounds: int = passwords.DEFAULT_ROUNDS,
        revoke_sessions_on_password_reset: bool = True,
    ) -> None:
        self.users = users
        self.codes = codes
        self.limiter = limiter
        self.tokens = tokens
        self.blacklist = blacklist
        self.bcrypt_rounds = bcrypt_rounds
        self.revoke_sessions_on_password_reset = revoke_sessions_on_password_reset

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def send_registration_code(self, email: str) -> None:
        """Issue an ACTIVATION code. ConflictError if an active account owns email."""
        user = self.users.get_by_email(email)
        if user is not None and user.is_active:
            raise ConflictError("An account with that email is already registered.")
        self.codes.issue(email, CodePurpose.ACTIVATION)

    def register(self, email: str, username: str, password: str, code: str) -> int:
        """Create and activate an account in one step. Returns the new user id."""
        # bcrypt outside the transaction so the write lock is held briefly.
        password_hash = passwords.hash_password(password, self.bcrypt_rounds)
        with self.users.transaction() as conn:
            self.codes.validate(email, CodePurpose.ACTIVATION, code, conn=conn)
            user_id = self.users.create_user(username, email, password_hash, conn=conn)
            self.users.activate(email, conn=conn)
        logger.info("Registered user id=%s (%s)", user_id, redact_email(email))
        return user_id

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> IssuedToken:
        """Exchange credentials for a session token.

        Every attempt counts against the per-username window; a success
        clears it, so the limit bounds consecutive failures.
        """
        self.limiter.check_and_record(username, LOGIN)
        user_id = self.users.verify_password(username, password)
        self.limiter.reset(username, LOGIN)
        self.users.update_last_login(user_id)
        issued = self.tokens.issue(user_id, username)
        logger.info("Login succeeded for user id=%s", user_id)
        return issued

    def logout(self, token: str) -> None:
        """Revoke token. Succeeds for expired or already revoked tokens."""
        claims = self.tokens.decode(token)
        self.blacklist.revoke(
            claims.token_id,
            RevocationReason.LOGOUT,
            subject=claims.subject,
            expires_at=claims.expires_at,
        )

    def current_user(self, token: str) -> User:
        claims = self.tokens.verify(token)
        user = self.users.get_by_id(claims.subject)
        if user is None or not user.is_active:
            # Account gone or deactivated after the token was minted.
            raise TokenRevokedError()
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def send_reset_code(self, email: str) -> None:
        """Issue a PASSWORD_RESET code. NotFoundError unless an active account owns email."""
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            raise NotFoundError("No active account for that email.")
        self.codes.issue(email, CodePurpose.PASSWORD_RESET)

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            raise NotFoundError("No active account for that email.")
        password_hash = passwords.hash_password(new_password, self.bcrypt_rounds)

        # Single point of consumption: after this line the code is spent.
        self.codes.validate(email, CodePurpose.PASSWORD_RESET, code)
        try:
            self.users.update_password(user.id, password_hash)
        except AuthError as exc:
            logger.error("Password update failed after code consumption for user id=%s: %s", user.id, exc)
            raise UnavailableError(
                "Password could not be updated. Request a fresh code and try again.",
                detail="fresh code required",
            ) from exc
        logger.info("Password reset for user id=%s", user.id)

        if self.revoke_sessions_on_password_reset:
            self.blacklist.revoke_subject(user.id, RevocationReason.FORCED)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def revoke_sessions(self, user_id: int) -> None:
        self.blacklist.revoke_subject(user_id, RevocationReason.FORCED)

    def deactivate_user(self, user_id: int) -> None:
        """Deactivate the account and revoke every session it holds."""
        if not self.users.deactivate(user_id):
            raise NotFoundError("User not found.")
        self.blacklist.revoke_subject(user_id, RevocationReason.FORCED)
        logger.info("Deactivated user id=%s", user_id)

    def purge_expired(self) -> int:
        """Evict expired codes and revocation records. Returns rows removed."""
        return self.codes.purge_expired() + self.blacklist.purge_expired()


def build_gateway(
    settings,
    engine: Engine,
    *,
    mailer: CodeDispatcher | None = None,
    clock: Callable[[], float] = time.time,
) -> AuthGateway:
    """Wire an AuthGateway from Settings. Shared by the API lifespan, the CLI and tests."""
    limiter = RateLimiter(settings.rate_limit_storage_uri, settings.rate_limit_strategy)
    limiter.configure(LOGIN, settings.login_max_attempts, settings.login_window_seconds)
    for purpose in CodePurpose:
        limiter.configure(send_code_action(purpose.value), 1, settings.code_resend_interval_seconds)

    if mailer is None:
        mailer = SMTPMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_ssl=settings.smtp_use_ssl,
            sender=settings.mail_from,
            timeout=settings.mail_timeout_seconds,
        )

    blacklist = TokenBlacklist(engine, token_lifetime_seconds=settings.token_expire_seconds, clock=clock)
    return AuthGateway(
        users=UserStore(engine, bcrypt_rounds=settings.bcrypt_rounds),
        codes=CodeIssuer(
            engine,
            secret_key=settings.secret_key,
            limiter=limiter,
            mailer=mailer,
            code_length=settings.code_length,
            expire_seconds=settings.code_expire_seconds,
            max_attempts=settings.code_max_attempts,
            retention_seconds=settings.code_retention_seconds,
            clock=clock,
        ),
        limiter=limiter,
        tokens=TokenIssuer(
            settings.secret_key,
            blacklist,
            lifetime_seconds=settings.token_expire_seconds,
            clock=clock,
        ),
        blacklist=blacklist,
        bcrypt_rounds=settings.bcrypt_rounds,
        revoke_sessions_on_password_reset=settings.revoke_sessions_on_password_reset,
    )
