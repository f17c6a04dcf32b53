"""
core/db.py -- Engine ownership and the unit-of-work boundary.

Pattern: Unit of Work. Database owns the SQLAlchemy engine; repositories in
auth/store.py and oauth2/store.py are stateless and receive a Connection for
every call. A request handler opens exactly one transaction with
Database.transaction() and passes the connection down, so every read and
write of a check-then-act sequence (code redemption, token consumption,
session creation) commits or rolls back together.

Tables register themselves on the shared `metadata` when their store module
is imported. Import the stores before constructing Database so create_all()
sees them.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, oauth2/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("gptauth.db")

metadata = MetaData()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp. Naive values are treated as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Engine holder and transaction factory.

    Usage:
        db = Database("sqlite:///gptauth.db")
        with db.transaction() as conn:
            user = user_store.read_user(conn, pin=1234)
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction.

        Commits when the block exits normally and rolls back when it raises;
        the exception is re-raised for the handler to turn into a response.
        """
        with self.engine.begin() as conn:
            yield conn

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except Exception:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()
