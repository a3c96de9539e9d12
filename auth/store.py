"""
auth/store.py -- SQLAlchemy Core persistence for User records (CredentialStore).

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and gateway code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Uniqueness of username and email is enforced by UNIQUE constraints, not by
  a check-then-insert in code. Two concurrent registrations for the same
  identity therefore produce exactly one row; the loser's IntegrityError is
  mapped to ConflictError.

  verify_password() always runs bcrypt, against a dummy hash when the user is
  unknown, so neither the error nor the response time reveals whether the
  username exists [C1].

Mutating methods accept an optional open Connection so the gateway can
compose them with code consumption in one transaction (see AuthGateway.register).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth import passwords
from auth.db import SQLStore, users
from auth.errors import ConflictError, InvalidCredentialsError, NotFoundError
from auth.models import User

logger = logging.getLogger("strmauth.store")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserStore(SQLStore):
    """Repository for User entities.

    Usage:
        store = UserStore(create_db_engine("sqlite:///strmauth.db"))
        user_id = store.create_user("alice", "alice@example.com", hash_password("Secret1!"))
        store.activate("alice@example.com")
        store.verify_password("alice", "Secret1!")  # -> user_id
    """

    def __init__(self, engine: Engine, *, bcrypt_rounds: int = passwords.DEFAULT_ROUNDS) -> None:
        super().__init__(engine)
        # Same cost as real hashes so unknown-user checks take as long as real ones.
        self._dummy_hash = passwords.hash_password("strmauth_timing_dummy", bcrypt_rounds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    def get_by_id(self, user_id: int) -> User | None:
        with self.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match."""
        with self.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, username: str, email: str, password_hash: str, *, conn: Connection | None = None) -> int:
        """Insert a pending (inactive) user and return its id.

        Raises ConflictError if the username or email is already taken.
        """
        try:
            with self.transaction(conn) as c:
                result = c.execute(
                    users.insert().values(
                        username=username,
                        email=email,
                        hashed_password=password_hash,
                        is_active=0,
                        created_at=_now_iso(),
                    )
                )
        except IntegrityError as exc:
            logger.info("Rejected duplicate account (username=%s)", username)
            raise ConflictError() from exc
        return result.inserted_primary_key[0]

    def activate(self, email: str, *, conn: Connection | None = None) -> None:
        """Mark the pending user owning email as active.

        Raises NotFoundError if no pending user exists. Deactivated accounts
        are not pending and cannot be re-activated through this path.
        """
        with self.transaction(conn) as c:
            result = c.execute(
                users.update()
                .where((users.c.email == email) & (users.c.is_active == 0) & (users.c.deactivated_at.is_(None)))
                .values(is_active=1)
            )
        if result.rowcount == 0:
            raise NotFoundError("No pending account for that email.")

    def verify_password(self, username: str, password: str) -> int:
        """Return the user id when the credentials are valid and the account is active.

        Raises InvalidCredentialsError for unknown user, wrong password and
        inactive account alike [C1].
        """
        user = self.get_by_username(username)
        if user is None or not user.hashed_password:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            passwords.verify_password(password, self._dummy_hash)
            raise InvalidCredentialsError()
        if not passwords.verify_password(password, user.hashed_password):
            raise InvalidCredentialsError()
        if not user.is_active:
            raise InvalidCredentialsError()
        return user.id

    def update_password(self, user_id: int, new_password_hash: str, *, conn: Connection | None = None) -> None:
        """Overwrite the stored hash.

        Issued tokens stay valid; revoking them is an explicit TokenBlacklist
        action taken by the caller.
        """
        with self.transaction(conn) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(hashed_password=new_password_hash))
        if result.rowcount == 0:
            raise NotFoundError("User not found.")

    def update_last_login(self, user_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=_now_iso()))

    def deactivate(self, user_id: int) -> bool:
        """Deactivate an account. Returns False if user_id was not found."""
        with self.transaction() as conn:
            result = conn.execute(
                users.update().where(users.c.id == user_id).values(is_active=0, deactivated_at=_now_iso())
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
        deactivated_at=row.deactivated_at,
    )
