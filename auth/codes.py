"""
auth/codes.py -- One-time verification codes (CodeIssuer).

Security design decisions:
  Generation: secrets.randbelow over 10^code_length, zero-padded. Never the
       `random` module -- a predictable code is no code at all.

  Storage: HMAC-SHA256(SECRET_KEY, "email:purpose:code"). A leaked database
       reveals no live code, and the small code space cannot be precomputed
       without the key. The plaintext only ever exists in the dispatched mail.

  Comparison: the submission's HMAC is compared against every stored code for
       (email, purpose) with hmac.compare_digest, with no early exit, so a
       match on a stale code costs the same as a miss.

  Single use: consumption is one conditional UPDATE ... WHERE consumed_at IS
       NULL. Two concurrent submissions of the same code both reach the
       UPDATE; the database serializes them and the loser sees rowcount 0
       and gets CodeAlreadyUsedError.

  One active code: issue() supersedes the previous active code and inserts
       the new one in the same transaction.

  Guess budget: every miss increments the active code's failed_attempts; at
       code_max_attempts the code is burned (expires_at = now), so the 10^6
       space cannot be walked within one expiry window.

  Delivery: if the mailer fails, the new code is deleted, the code it
       replaced is restored and the resend counter is cleared. The caller
       gets DispatchFailedError and can retry immediately. If the rollback
       itself fails, the new code is expired instead. A storage failure
       before delivery also clears the resend counter.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable

from sqlalchemy import delete, select
from sqlalchemy.engine import Connection, Engine

from auth.db import SQLStore, verification_codes
from auth.errors import (
    AuthError,
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeMismatchError,
    CodeSupersededError,
    DispatchFailedError,
    InvalidFormatError,
)
from auth.mailer import CodeDispatcher, redact_email
from auth.models import CodePurpose, VerificationCode
from auth.ratelimit import RateLimiter, send_code_action

logger = logging.getLogger("strmauth.codes")

_codes = verification_codes


class CodeIssuer(SQLStore):
    """Issues, delivers and redeems one-time codes.

    Usage:
        issuer = CodeIssuer(engine, secret_key=key, limiter=limiter, mailer=mailer)
        issuer.issue("alice@example.com", CodePurpose.ACTIVATION)
        issuer.validate("alice@example.com", CodePurpose.ACTIVATION, "042917")
    """

    def __init__(
        self,
        engine: Engine,
        *,
        secret_key: str,
        limiter: RateLimiter,
        mailer: CodeDispatcher,
        code_length: int = 6,
        expire_seconds: int = 600,
        max_attempts: int = 5,
        retention_seconds: int = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(engine)
        self._secret_key = secret_key.encode("utf-8")
        self.limiter = limiter
        self.mailer = mailer
        self.code_length = code_length
        self.expire_seconds = expire_seconds
        self.max_attempts = max_attempts
        self.retention_seconds = retention_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _generate(self) -> str:
        return f"{secrets.randbelow(10**self.code_length):0{self.code_length}d}"

    def _digest(self, email: str, purpose: CodePurpose, code: str) -> str:
        message = f"{email}:{purpose.value}:{code}".encode("utf-8")
        return hmac.new(self._secret_key, message, hashlib.sha256).hexdigest()

    def _active(self, email: str, purpose: CodePurpose, now: float):
        return (
            (_codes.c.email == email)
            & (_codes.c.purpose == purpose.value)
            & (_codes.c.consumed_at.is_(None))
            & (_codes.c.superseded_at.is_(None))
            & (_codes.c.expires_at > now)
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, email: str, purpose: CodePurpose) -> None:
        """Generate, store and deliver a fresh code for (email, purpose).

        Raises RateLimitedError before anything is stored, and
        DispatchFailedError (after rolling the issuance back) when delivery fails.
        """
        action = send_code_action(purpose.value)
        self.limiter.check_and_record(email, action)

        code = self._generate()
        now = self._clock()
        try:
            code_id = self._store(email, purpose, code, now)
        except AuthError:
            # Nothing was stored, so the resend allowance is not spent.
            self.limiter.reset(email, action)
            raise

        try:
            self.mailer.send_code(email, code, purpose, self.expire_seconds)
        except Exception as exc:
            try:
                self._undo_issue(code_id, email, purpose, now)
            finally:
                self.limiter.reset(email, action)
            if isinstance(exc, DispatchFailedError):
                raise
            logger.exception("Mailer raised unexpectedly for %s", redact_email(email))
            raise DispatchFailedError() from exc
        logger.info("Issued %s code for %s", purpose.value, redact_email(email))

    def _store(self, email: str, purpose: CodePurpose, code: str, now: float) -> int:
        """Supersede the active code and insert the new one in one transaction."""
        with self.transaction() as conn:
            conn.execute(
                _codes.update()
                .where(
                    (_codes.c.email == email)
                    & (_codes.c.purpose == purpose.value)
                    & (_codes.c.consumed_at.is_(None))
                    & (_codes.c.superseded_at.is_(None))
                )
                .values(superseded_at=now)
            )
            result = conn.execute(
                _codes.insert().values(
                    email=email,
                    purpose=purpose.value,
                    code_hash=self._digest(email, purpose, code),
                    created_at=now,
                    expires_at=now + self.expire_seconds,
                )
            )
            return result.inserted_primary_key[0]

    def _undo_issue(self, code_id: int, email: str, purpose: CodePurpose, issued_at: float) -> None:
        """Delete an undelivered code and reinstate the code it superseded.

        If that rollback fails, the undelivered code is expired instead so it
        can never be redeemed.
        """
        try:
            with self.transaction() as conn:
                conn.execute(delete(_codes).where(_codes.c.id == code_id))
                conn.execute(
                    _codes.update()
                    .where(
                        (_codes.c.email == email)
                        & (_codes.c.purpose == purpose.value)
                        & (_codes.c.superseded_at == issued_at)
                    )
                    .values(superseded_at=None)
                )
        except AuthError:
            with self.transaction() as conn:
                conn.execute(_codes.update().where(_codes.c.id == code_id).values(expires_at=issued_at))
            logger.warning("Expired undelivered %s code for %s", purpose.value, redact_email(email))
            return
        logger.warning("Rolled back undelivered %s code for %s", purpose.value, redact_email(email))

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, email: str, purpose: CodePurpose, submitted: str, *, conn: Connection | None = None) -> None:
        """Consume the code if it is valid; raise the matching CodeError otherwise.

        With conn, consumption joins the caller's transaction and is undone if
        the caller rolls back. Call it before any other write on conn: a miss
        records the failed attempt in a separate transaction.

        A submission that is not code_length ASCII digits raises
        InvalidFormatError without touching the attempt counter.
        """
        if len(submitted) != self.code_length or not (submitted.isascii() and submitted.isdigit()):
            raise InvalidFormatError(f"Verification code must be {self.code_length} digits.")
        now = self._clock()
        digest = self._digest(email, purpose, submitted)
        with self.transaction(conn) as c:
            rows = c.execute(
                _codes.select()
                .where((_codes.c.email == email) & (_codes.c.purpose == purpose.value))
                .order_by(_codes.c.id)
            ).fetchall()
            # Newest match wins if the same digits were ever drawn twice.
            match = None
            for row in rows:
                if hmac.compare_digest(row.code_hash, digest):
                    match = row
            if match is not None:
                self._consume(c, _row_to_code(match), now)
                return
        self._record_miss(email, purpose, now)
        raise CodeMismatchError()

    def _consume(self, conn: Connection, code: VerificationCode, now: float) -> None:
        _raise_if_unusable(code, now)
        result = conn.execute(
            _codes.update()
            .where(
                (_codes.c.id == code.id)
                & (_codes.c.consumed_at.is_(None))
                & (_codes.c.superseded_at.is_(None))
                & (_codes.c.expires_at > now)
            )
            .values(consumed_at=now)
        )
        if result.rowcount == 1:
            logger.info("Consumed %s code for %s", code.purpose.value, redact_email(code.email))
            return
        # Lost a race: report what the winner did to the row.
        row = conn.execute(_codes.select().where(_codes.c.id == code.id)).fetchone()
        if row is not None:
            _raise_if_unusable(_row_to_code(row), now)
        raise CodeAlreadyUsedError()

    def _record_miss(self, email: str, purpose: CodePurpose, now: float) -> None:
        active = self._active(email, purpose, now)
        with self.transaction() as conn:
            conn.execute(_codes.update().where(active).values(failed_attempts=_codes.c.failed_attempts + 1))
            burned = conn.execute(
                _codes.update().where(active & (_codes.c.failed_attempts >= self.max_attempts)).values(expires_at=now)
            ).rowcount
        if burned:
            logger.warning(
                "Burned %s code for %s after %d failed attempts",
                purpose.value,
                redact_email(email),
                self.max_attempts,
            )

    # ------------------------------------------------------------------
    # Queries / housekeeping
    # ------------------------------------------------------------------

    def get_active(self, email: str, purpose: CodePurpose) -> VerificationCode | None:
        with self.connect() as conn:
            row = conn.execute(
                _codes.select().where(self._active(email, purpose, self._clock())).order_by(_codes.c.id.desc())
            ).first()
        return _row_to_code(row) if row is not None else None

    def count_codes(self, email: str, purpose: CodePurpose) -> int:
        with self.connect() as conn:
            rows = conn.execute(
                select(_codes.c.id).where((_codes.c.email == email) & (_codes.c.purpose == purpose.value))
            ).fetchall()
        return len(rows)

    def purge_expired(self) -> int:
        """Delete codes that expired more than retention_seconds ago."""
        cutoff = self._clock() - self.retention_seconds
        with self.transaction() as conn:
            removed = conn.execute(delete(_codes).where(_codes.c.expires_at <= cutoff)).rowcount
        if removed:
            logger.info("Purged %d expired verification codes", removed)
        return removed


def _raise_if_unusable(code: VerificationCode, now: float) -> None:
    if code.consumed:
        raise CodeAlreadyUsedError()
    if code.superseded:
        raise CodeSupersededError()
    if code.is_expired(now):
        raise CodeExpiredError()


def _row_to_code(row) -> VerificationCode:
    return VerificationCode(
        id=row.id,
        email=row.email,
        purpose=CodePurpose(row.purpose),
        code_hash=row.code_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
        superseded_at=row.superseded_at,
        failed_attempts=row.failed_attempts,
    )
