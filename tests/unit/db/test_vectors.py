"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import json

import pytest

from corpusmap.db.vectors import ensure_vec_table, model_to_slug, vec_table_name


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("cohere/embed-multilingual-v3.0", "cohere_embed_multilingual_v3_0"),
    ("voyage/voyage-law-2", "voyage_voyage_law_2"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    assert vec_table_name("openai_x") == "vec_documents_openai_x"


def test_ensure_vec_table_creates_table(tmp_db):
    table = ensure_vec_table(tmp_db, model_to_slug("openai/text-embedding-3-small"), dimensions=1536)
    assert table == "vec_documents_openai_text_embedding_3_small"
    row = tmp_db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    assert row is not None


def test_ensure_vec_table_idempotent(tmp_db):
    assert ensure_vec_table(tmp_db, "m", dimensions=4) == ensure_vec_table(tmp_db, "m", dimensions=4)


def test_vec_table_roundtrip_by_rowid(tmp_db):
    table = ensure_vec_table(tmp_db, "m", dimensions=4)
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (7, ?)", ("[0.1, 0.2, 0.3, 0.4]",))
    row = tmp_db.execute(
        f"SELECT vec_to_json(embedding) AS e FROM {table} WHERE rowid = 7"
    ).fetchone()
    assert json.loads(row["e"]) == pytest.approx([0.1, 0.2, 0.3, 0.4])


def test_ensure_vec_table_invalid_slug(tmp_db):
    with pytest.raises(ValueError, match="model_slug"):
        ensure_vec_table(tmp_db, "invalid/slug!", dimensions=128)


def test_ensure_vec_table_invalid_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_table(tmp_db, "valid_slug", dimensions=0)
