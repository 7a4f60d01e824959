"""Tests for Database connection layer."""

from __future__ import annotations

from pathlib import Path

import pytest

from corpusmap.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".corpusmap.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".corpusmap.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_pragmas(tmp_path):
    conn = Database(tmp_path / ".corpusmap.db").connect()
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
    conn.close()


def test_row_factory_set(tmp_path):
    conn = Database(tmp_path / ".corpusmap.db").connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / ".corpusmap.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / ".corpusmap.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1


def test_busy_timeout_is_configurable(tmp_path):
    conn = Database(tmp_path / ".corpusmap.db", busy_timeout_ms=250).connect()
    assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 250
    conn.close()


def test_reader_sees_committed_rows_while_writer_holds_transaction(tmp_path):
    db = Database(tmp_path / ".corpusmap.db")
    writer = db.connect()
    writer.execute("CREATE TABLE t (x INTEGER)")
    writer.execute("INSERT INTO t VALUES (1)")
    writer.commit()
    writer.execute("BEGIN IMMEDIATE")
    writer.execute("INSERT INTO t VALUES (2)")

    reader = db.connect()
    assert reader.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 1

    writer.commit()
    reader.close()
    writer.close()
