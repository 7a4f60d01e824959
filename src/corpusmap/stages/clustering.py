"""Cluster stage: HDBSCAN over the reduced vectors.

The number of clusters is not fixed in advance and low-density points are
labelled noise instead of being pulled into the nearest cluster. Noise
members go to one reserved noise pseudo-cluster per session so every
clusterable document ends up with a cluster id. Existing clusters are
replaced in a single transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict

import hdbscan
import numpy as np

from corpusmap.config import ClusteringCfg
from corpusmap.db.repository import Repository
from corpusmap.stages.reduction import ReducedVectors, ReductionStage
from corpusmap.stats import ClusterStats

logger = logging.getLogger(__name__)

STAGE = "cluster"
NOISE_LABEL = -1


def cluster_labels(points: np.ndarray, cfg: ClusteringCfg) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(labels, probabilities)`` for *points*; label -1 is noise.

    Sets smaller than ``min_cluster_size`` are all noise.
    """
    n_points = points.shape[0]
    if n_points < max(cfg.min_cluster_size, 2):
        return np.full(n_points, NOISE_LABEL, dtype=int), np.zeros(n_points)

    min_samples = cfg.min_samples if cfg.min_samples is not None else cfg.min_cluster_size
    clusterer = hdbscan.HDBSCAN(
        min_cluster_size=cfg.min_cluster_size,
        min_samples=min(min_samples, n_points - 1),
        metric=cfg.metric,
        cluster_selection_method=cfg.selection_method,
    )
    labels = clusterer.fit_predict(points)
    return np.asarray(labels, dtype=int), np.asarray(clusterer.probabilities_, dtype=float)


class ClusteringStage:
    name = STAGE

    def __init__(self, repo: Repository, cfg: ClusteringCfg, reducer: ReductionStage) -> None:
        self._repo = repo
        self._cfg = cfg
        self._reducer = reducer

    def is_current(self, session_id: str) -> bool:
        """True when clusters exist, every clusterable document is assigned
        and no assigned document has stopped being clusterable."""
        return (
            bool(self._repo.list_clusters(session_id))
            and self._repo.count_unclustered(session_id) == 0
            and self._repo.count_stale_assignments(session_id) == 0
        )

    def _existing_stats(self, session_id: str) -> ClusterStats:
        stored = self._repo.get_session_stats(session_id).get(STAGE)
        if isinstance(stored, ClusterStats):
            return stored
        clusters = self._repo.list_clusters(session_id)
        sizes = [c.member_count for c in clusters if not c.is_noise]
        noise = sum(c.member_count for c in clusters if c.is_noise)
        return ClusterStats(
            total_points=sum(sizes) + noise,
            cluster_count=len(sizes),
            noise_count=noise,
            average_cluster_size=round(sum(sizes) / len(sizes), 2) if sizes else 0.0,
            largest_cluster_size=max(sizes, default=0),
        )

    def run(self, session_id: str, reduced: ReducedVectors | None = None) -> ClusterStats:
        """Cluster the session.

        Without *reduced*, an up-to-date clustering is kept as is; otherwise
        the reduction is recomputed first.
        """
        if reduced is None:
            if self.is_current(session_id):
                logger.info("cluster.skip session=%s (all documents assigned)", session_id)
                return self._existing_stats(session_id)
            reduced = self._reducer.run(session_id)

        self._repo.update_session_progress(
            session_id, STAGE, 0, len(reduced), "Clustering documents"
        )
        labels, probabilities = cluster_labels(reduced.reduced, self._cfg)

        members: dict[int, list[str]] = defaultdict(list)
        confidences: dict[str, float] = {}
        for doc_id, label, prob in zip(reduced.doc_ids, labels.tolist(), probabilities.tolist()):
            members[label].append(doc_id)
            confidences[doc_id] = round(float(prob), 4)

        noise_ids = members.pop(NOISE_LABEL, [])
        with self._repo.transaction():
            self._repo.clear_clusters(session_id)
            for label in sorted(members):
                self._repo.create_cluster(session_id, members[label], False, confidences)
            if noise_ids:
                self._repo.create_cluster(session_id, noise_ids, True, confidences)

        sizes = [len(ids) for ids in members.values()]
        stats = ClusterStats(
            total_points=len(reduced),
            input_dimensions=reduced.input_dimensions,
            reduced_dimensions=reduced.reduced_dimensions,
            cluster_count=len(sizes),
            noise_count=len(noise_ids),
            average_cluster_size=round(sum(sizes) / len(sizes), 2) if sizes else 0.0,
            largest_cluster_size=max(sizes, default=0),
        )
        self._repo.update_session_progress(
            session_id, STAGE, len(reduced), len(reduced), "Clustered documents"
        )
        logger.info(
            "cluster.done session=%s points=%d clusters=%d noise=%d",
            session_id,
            stats.total_points,
            stats.cluster_count,
            stats.noise_count,
        )
        return stats
