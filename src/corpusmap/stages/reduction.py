"""Reduce stage: project embeddings to a small working dimensionality with UMAP.

The result only lives in memory and is handed straight to the clustering
stage. Very small sets (too few points for UMAP's neighbour graph, or
vectors already at or below the target size) pass through unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import umap

from corpusmap.config import ReductionCfg
from corpusmap.db.repository import Repository

logger = logging.getLogger(__name__)

STAGE = "reduce"


@dataclass
class ReducedVectors:
    """Row ``i`` of ``original`` and ``reduced`` belongs to ``doc_ids[i]``."""

    doc_ids: list[str]
    original: np.ndarray
    reduced: np.ndarray
    method: str

    def __len__(self) -> int:
        return len(self.doc_ids)

    @property
    def input_dimensions(self) -> int:
        return int(self.original.shape[1]) if self.original.ndim == 2 and len(self) else 0

    @property
    def reduced_dimensions(self) -> int:
        return int(self.reduced.shape[1]) if self.reduced.ndim == 2 and len(self) else 0


def reduce_embeddings(matrix: np.ndarray, cfg: ReductionCfg) -> tuple[np.ndarray, str]:
    """Return ``(reduced_matrix, method)`` where method is 'umap' or 'identity'."""
    n_points = matrix.shape[0]
    if n_points == 0:
        return matrix.reshape(0, 0), "identity"
    if matrix.shape[1] <= cfg.n_components or n_points <= cfg.n_components + 1:
        return matrix, "identity"

    reducer = umap.UMAP(
        n_components=cfg.n_components,
        n_neighbors=min(cfg.n_neighbors, n_points - 1),
        min_dist=cfg.min_dist,
        metric=cfg.metric,
        random_state=cfg.random_state,
    )
    reduced = reducer.fit_transform(matrix)
    return np.asarray(reduced, dtype=np.float32), "umap"


class ReductionStage:
    name = STAGE

    def __init__(self, repo: Repository, cfg: ReductionCfg, vec_table: str) -> None:
        self._repo = repo
        self._cfg = cfg
        self._vec_table = vec_table

    def run(self, session_id: str) -> ReducedVectors:
        rows = self._repo.get_embeddings(session_id, self._vec_table)
        doc_ids = [doc_id for doc_id, _ in rows]
        if rows:
            original = np.asarray([vector for _, vector in rows], dtype=np.float32)
        else:
            original = np.zeros((0, 0), dtype=np.float32)

        self._repo.update_session_progress(
            session_id, STAGE, 0, len(doc_ids), "Reducing embedding dimensions"
        )
        reduced, method = reduce_embeddings(original, self._cfg)
        result = ReducedVectors(doc_ids, original, reduced, method)
        self._repo.update_session_progress(
            session_id, STAGE, len(doc_ids), len(doc_ids), "Reduced embedding dimensions"
        )
        logger.info(
            "reduce.done session=%s points=%d dims=%d->%d method=%s",
            session_id,
            len(result),
            result.input_dimensions,
            result.reduced_dimensions,
            method,
        )
        return result
