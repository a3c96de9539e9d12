"""
auth/blacklist.py -- Revocation records for otherwise valid session tokens.

Tokens are stateless JWTs; this table is the only server-side state that can
make one unusable before its exp claim. Two kinds of record:

  token_blacklist      one row per revoked token id (logout, operator action)
  subject_revocations  one row per user: every token of that user issued at
                       or before revoked_before is rejected (password reset,
                       deactivation). Avoids enumerating tokens that were
                       never stored.

Both are keyed by primary key, so concurrent revokes of the same token or
subject produce one row and no error. Lookups go through the same database
as writes; once revoke() returns, the next is_revoked() sees the row.

Each row carries the expiry of the token(s) it revokes. purge_expired()
deletes rows whose tokens would be rejected for expiry anyway.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import SQLStore, subject_revocations, token_blacklist
from auth.models import BlacklistEntry, RevocationReason

logger = logging.getLogger("strmauth.blacklist")


class TokenBlacklist(SQLStore):
    """Repository for BlacklistEntry and per-subject revocation cutoffs."""

    def __init__(
        self,
        engine: Engine,
        *,
        token_lifetime_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(engine)
        self.token_lifetime_seconds = token_lifetime_seconds
        self._clock = clock

    def revoke(
        self,
        token_id: str,
        reason: RevocationReason,
        *,
        subject: int | None = None,
        expires_at: float | None = None,
    ) -> None:
        """Blacklist token_id. Revoking an already revoked token is a no-op.

        expires_at is the token's own expiry; when unknown, the longest
        lifetime a token can have from now is assumed.
        """
        now = self._clock()
        if expires_at is None:
            expires_at = now + self.token_lifetime_seconds
        try:
            with self.transaction() as conn:
                conn.execute(
                    token_blacklist.insert().values(
                        token_id=token_id,
                        subject=subject,
                        reason=reason.value,
                        revoked_at=now,
                        expires_at=expires_at,
                    )
                )
        except IntegrityError:
            # Primary key hit: revoked earlier, first entry stays as is.
            logger.debug("Token %s already revoked", token_id[:8])
            return
        logger.info("Revoked token %s (subject=%s reason=%s)", token_id[:8], subject, reason.value)

    def revoke_subject(self, subject: int, reason: RevocationReason = RevocationReason.FORCED) -> None:
        """Reject every token of subject issued up to now."""
        now = self._clock()
        values = {
            "reason": reason.value,
            "revoked_before": now,
            "expires_at": now + self.token_lifetime_seconds,
        }
        stmt = subject_revocations.update().where(subject_revocations.c.subject == subject).values(**values)
        try:
            with self.transaction() as conn:
                if conn.execute(stmt).rowcount == 0:
                    conn.execute(subject_revocations.insert().values(subject=subject, **values))
        except IntegrityError:
            # A concurrent revoke_subject inserted first; move its cutoff forward.
            with self.transaction() as conn:
                conn.execute(stmt)
        logger.info("Revoked all sessions of subject=%s (reason=%s)", subject, reason.value)

    def is_revoked(self, token_id: str, subject: int | None = None, issued_at: float | None = None) -> bool:
        with self.connect() as conn:
            hit = conn.execute(
                select(token_blacklist.c.token_id).where(token_blacklist.c.token_id == token_id)
            ).first()
            if hit is not None:
                return True
            if subject is None or issued_at is None:
                return False
            cutoff = conn.execute(
                select(subject_revocations.c.revoked_before).where(subject_revocations.c.subject == subject)
            ).scalar()
        return cutoff is not None and issued_at <= cutoff

    def get_entry(self, token_id: str) -> BlacklistEntry | None:
        with self.connect() as conn:
            row = conn.execute(token_blacklist.select().where(token_blacklist.c.token_id == token_id)).fetchone()
        if row is None:
            return None
        return BlacklistEntry(
            token_id=row.token_id,
            subject=row.subject,
            reason=RevocationReason(row.reason),
            revoked_at=row.revoked_at,
            expires_at=row.expires_at,
        )

    def count(self) -> int:
        """Number of blacklisted token ids currently held."""
        with self.connect() as conn:
            return conn.execute(select(func.count()).select_from(token_blacklist)).scalar() or 0

    def purge_expired(self) -> int:
        """Delete records whose tokens have expired naturally. Returns rows removed."""
        now = self._clock()
        with self.transaction() as conn:
            removed = conn.execute(delete(token_blacklist).where(token_blacklist.c.expires_at <= now)).rowcount
            removed += conn.execute(
                delete(subject_revocations).where(subject_revocations.c.expires_at <= now)
            ).rowcount
        if removed:
            logger.info("Purged %d expired revocation records", removed)
        return removed
