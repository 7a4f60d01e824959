"""Tests for UMAP dimensionality reduction."""

from __future__ import annotations

import numpy as np
import pytest

from corpusmap.config import ReductionCfg
from corpusmap.db.models import Document, TriageStatus
from corpusmap.db.vectors import ensure_vec_table
from corpusmap.stages.reduction import ReductionStage, reduce_embeddings


def test_empty_input_is_identity():
    reduced, method = reduce_embeddings(np.zeros((0, 0), dtype=np.float32), ReductionCfg())
    assert method == "identity"
    assert reduced.shape[0] == 0


def test_tiny_set_passes_through():
    matrix = np.eye(4, 8, dtype=np.float32)
    reduced, method = reduce_embeddings(matrix, ReductionCfg(n_components=5))
    assert method == "identity"
    assert reduced is matrix


def test_low_dimensional_input_passes_through():
    matrix = np.random.default_rng(0).normal(size=(50, 3)).astype(np.float32)
    _, method = reduce_embeddings(matrix, ReductionCfg(n_components=5))
    assert method == "identity"


def test_umap_projects_to_n_components():
    rng = np.random.default_rng(1)
    centers = np.eye(2, 16) * 5
    matrix = np.vstack([c + rng.normal(0, 0.1, (20, 16)) for c in centers]).astype(np.float32)

    reduced, method = reduce_embeddings(matrix, ReductionCfg(n_components=2, n_neighbors=30))

    assert method == "umap"
    assert reduced.shape == (40, 2)


def test_stage_reads_clusterable_embeddings(repo):
    repo.create_session("s1")
    table = ensure_vec_table(repo.connection, "m", 3)
    for i in range(3):
        doc_id = f"d{i}"
        repo.add_document(Document(id=doc_id, session_id="s1", text=doc_id))
        repo.update_triage(doc_id, TriageStatus.FIRM_DRAFTED, 0.9, "x")
        repo.mark_duplicate_group(doc_id, None, doc_id, [doc_id])
        repo.update_embedding(table, doc_id, [float(i), 1.0, 0.0])

    result = ReductionStage(repo, ReductionCfg(n_components=2), table).run("s1")

    assert result.doc_ids == ["d0", "d1", "d2"]
    assert result.input_dimensions == 3
    assert result.method == "identity"
    assert result.original[2].tolist() == pytest.approx([2.0, 1.0, 0.0])
