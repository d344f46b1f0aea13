"""SQLite management utilities."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from privacy_vault.core.errors import PersistenceFailure

DEFAULT_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA temp_store=MEMORY;",
    "PRAGMA secure_delete=ON;",
    "PRAGMA busy_timeout=5000;",
)


class SQLiteDatabase:
    """Thin wrapper around sqlite3 providing pragmatic defaults.

    The connection runs in autocommit mode; ``transaction()`` opens an explicit
    ``BEGIN IMMEDIATE`` and nested calls become savepoints, so components can
    compose their writes into the caller's unit of work. One re-entrant lock
    serialises writers sharing the connection.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path.expanduser()
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._connection is None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
                self._connection.row_factory = sqlite3.Row
                for pragma in DEFAULT_PRAGMAS:
                    self._connection.execute(pragma)
            return self._connection

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def executescript(self, script: str) -> None:
        with self._lock:
            conn = self.connect()
            conn.executescript(script)

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Cursor:
        with self._lock:
            conn = self.connect()
            return conn.execute(sql, params or [])

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self.execute(sql, params)
            return cursor.fetchall()

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Row | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a unit of work; nested calls roll back only their own savepoint.

        ``sqlite3.Error`` raised inside the block surfaces as
        ``PersistenceFailure`` after the rollback.
        """
        with self._lock:
            conn = self.connect()
            savepoint = f"sp_{self._depth}" if self._depth else None
            try:
                conn.execute(f"SAVEPOINT {savepoint}" if savepoint else "BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Could not open transaction: {exc}") from exc
            self._depth += 1
            try:
                yield conn
            except BaseException as exc:
                self._depth -= 1
                if savepoint:
                    conn.execute(f"ROLLBACK TO {savepoint}")
                    conn.execute(f"RELEASE {savepoint}")
                else:
                    conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error):
                    raise PersistenceFailure(f"Store write failed: {exc}") from exc
                raise
            else:
                self._depth -= 1
                try:
                    conn.execute(f"RELEASE {savepoint}" if savepoint else "COMMIT")
                except sqlite3.Error as exc:
                    if not savepoint:
                        conn.execute("ROLLBACK")
                    raise PersistenceFailure(f"Commit failed: {exc}") from exc

    def vacuum(self) -> None:
        """Reclaim free pages so deleted rows do not linger in the file."""
        with self._lock:
            if self._depth:
                raise RuntimeError("VACUUM cannot run inside a transaction")
            conn = self.connect()
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            conn.execute("VACUUM;")

    def ensure_schema(self, schema_sql: str | None = None) -> None:
        if schema_sql is None:
            schema_path = Path(__file__).with_name("schema.sql")
            schema_sql = schema_path.read_text(encoding="utf-8")
        self.executescript(schema_sql)


__all__ = ["SQLiteDatabase"]
