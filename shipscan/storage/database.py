"""SQLite connection lifecycle and schema.

The application owns exactly one ``Database`` per process, opened at startup
and closed at shutdown; repositories receive it explicitly.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    client_name TEXT NOT NULL,
    barcode_number TEXT NOT NULL,
    invoice_type TEXT NOT NULL,
    search_text TEXT NOT NULL DEFAULT '',
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_client ON records(client_name);
CREATE INDEX IF NOT EXISTS idx_records_barcode ON records(barcode_number);
CREATE INDEX IF NOT EXISTS idx_records_created_at ON records(created_at);

CREATE TABLE IF NOT EXISTS registrations (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    submitted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_registrations_email ON registrations(email, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_registrations_submitted_email
    ON registrations(email) WHERE status = 'submitted';
"""


class Database:
    """A single SQLite connection shared across request threads.

    Access is serialized with a lock. Use ``connect()``/``close()`` or the
    context manager protocol.

    Args:
        path: Database file, or ``":memory:"``.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> "Database":
        if self._conn is not None:
            return self
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        conn.commit()
        self._conn = conn
        logger.info("Opened database at %s", self.path)
        return self

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        logger.info("Closed database at %s", self.path)

    def __enter__(self) -> "Database":
        return self.connect()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a commit-or-rollback block."""
        with self._lock:
            conn = self.connection
            with conn:
                yield conn

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.connection.execute(sql, params).fetchone()
