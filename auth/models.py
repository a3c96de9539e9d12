"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the gateway
do the work; api/models.py owns the HTTP shape of the same data.

Timestamps on codes, tokens and blacklist records are POSIX seconds (float)
because every comparison against them is "now vs. expiry". User timestamps
are ISO 8601 strings because they are only displayed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CodePurpose(str, Enum):
    ACTIVATION = "activation"
    PASSWORD_RESET = "password_reset"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    FORCED = "forced"


@dataclass
class User:
    """A registered identity.

    is_active is False between creation and activation, and again after an
    operator deactivates the account. Rows are never deleted.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = False
    created_at: str | None = None
    last_login: str | None = None
    deactivated_at: str | None = None

    @property
    def is_pending(self) -> bool:
        return not self.is_active and self.deactivated_at is None


@dataclass
class VerificationCode:
    """A stored one-time code. The plaintext is never persisted.

    code_hash is HMAC-SHA256(SECRET_KEY, email:purpose:code) so a database
    leak does not reveal live codes, and the 10^6 code space cannot be
    precomputed without the key.
    """

    email: str
    purpose: CodePurpose
    code_hash: str
    created_at: float
    expires_at: float
    id: int | None = None
    consumed_at: float | None = None
    superseded_at: float | None = None
    failed_attempts: int = 0

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    @property
    def superseded(self) -> bool:
        return self.superseded_at is not None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted session token and the claims it carries."""

    token: str
    token_id: str
    subject: int
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class TokenClaims:
    """Claims recovered from a signature-checked token."""

    subject: int
    username: str
    token_id: str
    issued_at: float
    expires_at: float


@dataclass
class BlacklistEntry:
    token_id: str
    subject: int | None
    reason: RevocationReason
    revoked_at: float
    expires_at: float
