"""SQLite connection for the pipeline database, with sqlite-vec loaded.

A pipeline run can hold the database for hours while batches are polled.
``status`` and ``recover`` are expected to open the same file from another
process in the meantime, so connections use WAL (readers never block the
writer) and wait on a locked database instead of failing immediately.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

# Long enough to ride out a stage committing a whole batch of results.
DEFAULT_BUSY_TIMEOUT_MS = 5_000


class Database:
    """Opens connections to one ``.corpusmap.db`` file.

    Args:
        db_path: Database file (created on first connect).
        busy_timeout_ms: How long a statement waits for another process's
            write lock before raising ``sqlite3.OperationalError``.
    """

    def __init__(
        self, db_path: Path | str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    ) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Return a new connection with rows as ``sqlite3.Row`` and vec0 available."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
