"""SQLite connection, schema and transaction handling.

One database file holds every persisted record (``records``) and the task
queue (``tasks``). Connections run in autocommit mode; all writes go
through ``Database.transaction`` which opens ``BEGIN IMMEDIATE`` so that
read-check-write sequences are serialised across processes.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    key  TEXT NOT NULL,
    dv   INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    PRIMARY KEY (kind, key)
);
CREATE INDEX IF NOT EXISTS idx_records_kind_dv ON records (kind, dv);

CREATE TABLE IF NOT EXISTS tasks (
    name       TEXT PRIMARY KEY,
    func       TEXT NOT NULL,
    args       TEXT NOT NULL,
    attempts   INTEGER NOT NULL DEFAULT 0,
    eta        TEXT NOT NULL,
    created    TEXT NOT NULL,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_tasks_eta ON tasks (eta);
"""


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Row factory returning rows as dictionaries."""
    names = [column[0] for column in cursor.description]
    return dict(zip(names, row))


def configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = dict_factory


def connect(path: Path | str) -> sqlite3.Connection:
    """Open (creating if needed) the database at ``path``; ``":memory:"`` is allowed."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
    configure_connection(conn)
    conn.executescript(SCHEMA)
    return conn


class Database:
    """A single connection plus a re-entrant transaction scope.

    Nested ``transaction()`` blocks join the outermost one; only the
    outermost block commits or rolls back.
    """

    def __init__(self, path: Path | str = ":memory:"):
        self.path = str(path)
        self.conn = connect(path)
        self._lock = threading.RLock()
        self._depth = 0

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                self._depth = 0

    def execute(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(query, params)

    def query(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            return self.conn.execute(query, params).fetchall()

    def query_one(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            return self.conn.execute(query, params).fetchone()
