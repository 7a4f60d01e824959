"""Database schema initialization."""

from __future__ import annotations

import sqlite3

from corpusmap.db.migrations import current_version, run_migrations


def initialize(conn: sqlite3.Connection) -> int:
    """Initialize the database schema via the migration runner (idempotent).

    Returns the schema version after migrating.
    """
    run_migrations(conn)
    return current_version(conn)
