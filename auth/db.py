"""
auth/db.py -- SQLAlchemy Core schema and engine for the authentication core.

All four record types live in one database so that registration can consume
a verification code and create the account inside a single transaction. Each
table still has exactly one owning repository:

  users                -> auth/store.py     (UserStore)
  verification_codes   -> auth/codes.py     (CodeIssuer)
  token_blacklist      -> auth/blacklist.py (TokenBlacklist)
  subject_revocations  -> auth/blacklist.py (TokenBlacklist)

Concurrency:
  SQLite runs in WAL mode with a busy timeout, so concurrent writers queue on
  the database write lock instead of failing. Every single-winner operation
  (code consumption, user insert, blacklist insert) is one conditional
  statement whose rowcount or UNIQUE constraint decides the winner.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth.errors import UnavailableError

logger = logging.getLogger("strmauth.db")

# Seconds a connection waits for the SQLite write lock before giving up.
_SQLITE_BUSY_TIMEOUT = 15

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
    # Set when an operator deactivates the account; distinguishes a
    # deactivated account from one still awaiting activation.
    Column("deactivated_at", Text),
)

verification_codes = Table(
    "verification_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("code_hash", String(64), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("consumed_at", Float),
    Column("superseded_at", Float),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Index("ix_verification_codes_email_purpose", "email", "purpose"),
)

token_blacklist = Table(
    "token_blacklist",
    metadata,
    Column("token_id", String(64), primary_key=True),
    Column("subject", Integer),
    Column("reason", String(16), nullable=False),
    Column("revoked_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)

subject_revocations = Table(
    "subject_revocations",
    metadata,
    Column("subject", Integer, primary_key=True),
    Column("reason", String(16), nullable=False),
    Column("revoked_before", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create the engine and the schema (idempotent)."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Repository base
# ---------------------------------------------------------------------------


class SQLStore:
    """Base for repositories sharing one engine.

    transaction() either joins a connection the caller already holds (so
    several repositories can take part in one unit of work) or opens a new
    one that commits on success and rolls back on any exception.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def transaction(self, conn: Connection | None = None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        try:
            with self.engine.begin() as new_conn:
                yield new_conn
        except OperationalError as exc:
            logger.error("Storage operation failed: %s", exc.orig)
            raise UnavailableError("Storage is temporarily unavailable.") from exc

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Read-only connection with the same error translation as transaction()."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("Storage read failed: %s", exc.orig)
            raise UnavailableError("Storage is temporarily unavailable.") from exc
