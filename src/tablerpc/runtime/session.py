"""
Database connections and request-scoped sessions.

A Session wraps one SQLite connection for the duration of one inbound call.
It is never shared between calls and is always closed by its factory,
rolling back whatever transaction is still open.
"""

from __future__ import annotations

import itertools
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from tablerpc.errors import SessionClosedError
from tablerpc.runtime.logging import get_logger

_memory_ids = itertools.count(1)


# =============================================================================
# Database
# =============================================================================


class Database:
    """
    Owns the SQLite database file and opens connections to it.

    Connections run in autocommit mode; transactions are opened explicitly by
    sessions and the migration runner. ``":memory:"`` gives a shared-cache
    in-memory database kept alive until ``close()``.
    """

    def __init__(self, path: str | Path = ".tablerpc/data.db", busy_timeout_ms: int = 5000):
        self.busy_timeout_ms = busy_timeout_ms
        self._anchor: sqlite3.Connection | None = None

        if str(path) == ":memory:":
            self.path: Path | None = None
            self._uri = f"file:tablerpc_mem_{next(_memory_ids)}?mode=memory&cache=shared"
            self._anchor = self._open()
        else:
            self.path = Path(path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._uri = None

    @property
    def is_memory(self) -> bool:
        return self.path is None

    def _open(self) -> sqlite3.Connection:
        if self._uri is not None:
            conn = sqlite3.connect(
                self._uri, uri=True, isolation_level=None, check_same_thread=False
            )
        else:
            conn = sqlite3.connect(
                str(self.path), isolation_level=None, check_same_thread=False
            )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def connect(self) -> sqlite3.Connection:
        """Open a new connection. The caller owns it and must close it."""
        conn = self._open()
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Short-lived connection for maintenance queries."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def table_exists(self, table_name: str) -> bool:
        with self.connection() as conn:
            return _table_exists(conn, table_name)

    def get_table_columns(self, table_name: str) -> list[str]:
        with self.connection() as conn:
            return [row["name"] for row in conn.execute(f'PRAGMA table_info("{table_name}")')]

    def close(self) -> None:
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None

    def __repr__(self) -> str:
        return f"Database({str(self.path) if self.path else ':memory:'})"


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


# =============================================================================
# Session
# =============================================================================


class Session:
    """
    Request-scoped database context.

    Attributes:
        passwords: Secrets from configuration, available to handlers
        endpoint: Name of the endpoint being called (if any)
        method: Name of the method being called (if any)
        log: Logger tagged with the call
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        passwords: dict[str, str] | None = None,
        endpoint: str | None = None,
        method: str | None = None,
    ):
        self._connection: sqlite3.Connection | None = connection
        self.passwords: dict[str, str] = dict(passwords or {})
        self.endpoint = endpoint
        self.method = method
        self.log = get_logger("DB")
        self._depth = 0
        self._savepoints = itertools.count(1)

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise SessionClosedError()
        return self._connection

    @property
    def closed(self) -> bool:
        return self._connection is None

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the block in a transaction.

        The outermost block issues BEGIN/COMMIT; nested blocks use savepoints,
        so an error inside a nested block only undoes that block.
        """
        conn = self.connection
        if self._depth == 0:
            conn.execute("BEGIN")
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                conn.execute("COMMIT")
            return

        name = f"sp_{next(self._savepoints)}"
        conn.execute(f"SAVEPOINT {name}")
        self._depth += 1
        try:
            yield conn
        except BaseException:
            self._depth -= 1
            if conn.in_transaction:
                conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            self._depth -= 1
            conn.execute(f"RELEASE SAVEPOINT {name}")

    def execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        return self.connection.execute(sql, params)

    def close(self) -> None:
        """Release the connection, rolling back anything left uncommitted."""
        conn = self._connection
        if conn is None:
            return
        self._connection = None
        try:
            if conn.in_transaction:
                self.log.warning(
                    "Rolling back uncommitted transaction on session close",
                    extra={"context": {"endpoint": self.endpoint, "method": self.method}},
                )
                conn.rollback()
        finally:
            self._depth = 0
            conn.close()

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SessionFactory:
    """Creates one Session per inbound call and guarantees its release."""

    def __init__(self, database: Database, passwords: dict[str, str] | None = None):
        self.database = database
        self.passwords = dict(passwords or {})
        self._log = get_logger("DB")

    @contextmanager
    def session(
        self, endpoint: str | None = None, method: str | None = None
    ) -> Iterator[Session]:
        session = Session(
            self.database.connect(),
            passwords=self.passwords,
            endpoint=endpoint,
            method=method,
        )
        try:
            yield session
        finally:
            session.close()
            self._log.log(logging.DEBUG, "Session released")
