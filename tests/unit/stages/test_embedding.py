"""Tests for the embedding stage."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeEmbeddingService

from corpusmap.config import EmbeddingCfg
from corpusmap.db.models import Document, TriageStatus
from corpusmap.stages.embedding import EmbeddingStage, embedding_text, vec_table_for

CFG = EmbeddingCfg(model="test/embed", dimensions=8, batch_size=2, concurrency=2)


@pytest.fixture
def session(repo):
    repo.create_session("s1")
    texts = {
        "a": "lease one",
        "b": "lease two",
        "c": "employment contract",
        "d": "merger memo",
    }
    for doc_id, text in texts.items():
        repo.add_document(Document(id=doc_id, session_id="s1", text=text))
        repo.update_triage(doc_id, TriageStatus.FIRM_DRAFTED, 0.9, "x")
        repo.mark_duplicate_group(f"h{doc_id}", None, doc_id, [doc_id])
    # A duplicate and a non-FirmDrafted document must never be embedded.
    repo.add_document(Document(id="dup", session_id="s1", text="lease one"))
    repo.update_triage("dup", TriageStatus.FIRM_DRAFTED, 0.9, "x")
    repo.mark_duplicate_group("ha", "ha", "a", ["a", "dup"])
    repo.add_document(Document(id="court", session_id="s1", text="court ruling"))
    repo.update_triage("court", TriageStatus.COURT_DOC, 0.9, "x")
    return "s1"


def _run(repo, service, cfg=CFG):
    return asyncio.run(EmbeddingStage(repo, service, cfg).run("s1"))


def test_embedding_text_falls_back_to_metadata():
    doc = Document(id="x", session_id="s", text="", file_name="scan.pdf", email_subject="Lease")
    assert embedding_text(doc, 100) == "scan.pdf Lease"
    assert embedding_text(Document(id="y", session_id="s", text="abcdef"), 3) == "abc"


def test_embeds_only_canonical_firm_drafted(repo, session):
    service = FakeEmbeddingService(dimensions=8)
    stats = _run(repo, service)

    assert sorted(service.embedded_texts) == ["employment contract", "lease one", "lease two", "merger memo"]
    assert stats.total == 4
    assert stats.embedded == 4
    assert stats.errored == 0
    assert all(len(call) <= CFG.batch_size for call in service.calls)

    table = vec_table_for(repo, CFG)
    rows = repo.get_embeddings("s1", table)
    assert [doc_id for doc_id, _ in rows] == ["a", "b", "c", "d"]
    assert all(len(vec) == 8 for _, vec in rows)
    assert repo.get_document("dup").embedded_at is None
    assert repo.get_document("court").embedded_at is None


def test_rerun_skips_embedded_documents(repo, session):
    service = FakeEmbeddingService(dimensions=8)
    _run(repo, service)
    calls_before = len(service.calls)

    stats = _run(repo, service)

    assert len(service.calls) == calls_before
    assert stats.skipped == 4
    assert stats.embedded == 4


def test_failed_input_only_errors_itself(repo, session):
    service = FakeEmbeddingService(dimensions=8, fail_on="merger")
    stats = _run(repo, service)

    assert stats.embedded == 3
    assert stats.errored == 1
    d = repo.get_document("d")
    assert d.embedded_at is None
    assert "merger" in d.embedding_error
    # The batch partner of the bad input was retried alone and succeeded.
    assert repo.get_document("c").is_embedded


def test_errored_documents_are_not_retried(repo, session):
    _run(repo, FakeEmbeddingService(dimensions=8, fail_on="merger"))
    service = FakeEmbeddingService(dimensions=8)
    stats = _run(repo, service)
    assert service.calls == []
    assert stats.errored == 1
    assert [d.id for d in repo.find_clusterable("s1")] == ["a", "b", "c"]


def test_wrong_dimensions_recorded_as_error(repo, session):
    service = FakeEmbeddingService(dimensions=8)
    service.wrong_dimensions = "employment"
    stats = _run(repo, service)
    assert stats.errored == 1
    assert "Expected 8 dimensions" in repo.get_document("c").embedding_error


def test_progress_is_reported(repo, session):
    _run(repo, FakeEmbeddingService(dimensions=8))
    progress = repo.get_session("s1").progress_dict
    assert progress["stage"] == "embed"
    assert progress["current"] == progress["total"] == 4
