"""Forward-only migration runner for the pipeline database schema.

Vec tables (vec_documents_*) are NOT migration-managed — use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                      TEXT PRIMARY KEY,
    total_documents         INTEGER NOT NULL DEFAULT 0,
    pipeline_status         TEXT NOT NULL DEFAULT 'NotStarted',
    pipeline_started_at     DATETIME,
    stage_started_at        DATETIME,
    pipeline_completed_at   DATETIME,
    pipeline_error          TEXT,
    pipeline_progress       TEXT NOT NULL DEFAULT '{}',
    created_at              DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS session_stats (
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    stage           TEXT NOT NULL,
    stats           TEXT NOT NULL DEFAULT '{}',
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (session_id, stage)
);

CREATE TABLE IF NOT EXISTS clusters (
    id              TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    member_count    INTEGER NOT NULL DEFAULT 0,
    is_noise        INTEGER NOT NULL DEFAULT 0,
    name            TEXT,
    description     TEXT,
    status          TEXT NOT NULL DEFAULT 'Pending',
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS documents (
    seq                 INTEGER PRIMARY KEY,
    id                  TEXT NOT NULL UNIQUE,
    session_id          TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    text                TEXT NOT NULL DEFAULT '',
    file_name           TEXT NOT NULL DEFAULT '',
    folder_path         TEXT NOT NULL DEFAULT '',
    email_subject       TEXT,
    email_sender        TEXT,
    email_date          TEXT,
    content_hash        TEXT,
    triage_status       TEXT,
    triage_confidence   REAL,
    triage_reason       TEXT,
    duplicate_group_id  TEXT,
    is_canonical        INTEGER,
    embedded_at         DATETIME,
    embedding_error     TEXT,
    cluster_id          TEXT REFERENCES clusters(id) ON DELETE SET NULL,
    cluster_confidence  REAL,
    created_at          DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_documents_session_triage
    ON documents(session_id, triage_status);
CREATE INDEX IF NOT EXISTS idx_documents_session_hash
    ON documents(session_id, content_hash);
CREATE INDEX IF NOT EXISTS idx_documents_cluster
    ON documents(cluster_id);

CREATE TABLE IF NOT EXISTS batch_jobs (
    handle          TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    stage           TEXT NOT NULL,
    item_ids        TEXT NOT NULL DEFAULT '[]',
    status          TEXT NOT NULL DEFAULT 'submitted',
    submitted_at    DATETIME NOT NULL DEFAULT (datetime('now')),
    completed_at    DATETIME,
    error           TEXT
);

CREATE INDEX IF NOT EXISTS idx_batch_jobs_session
    ON batch_jobs(session_id, stage, status);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied schema version (0 for a fresh database)."""
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0
