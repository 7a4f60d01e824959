"""Name stage: ask the LLM for a short label per unnamed cluster.

Representatives are the members closest to the cluster centroid in the
original embedding space. Requests go through the batch service with
custom id ``cluster:<id>``. A cluster whose name cannot be produced stays
unnamed; that never fails the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from corpusmap.batch.base import (
    BatchRequest,
    BatchService,
    make_custom_id,
    split_custom_id,
)
from corpusmap.batch.poller import PollPolicy
from corpusmap.config import NamingCfg
from corpusmap.db.models import Cluster, Document
from corpusmap.db.repository import Repository
from corpusmap.parsing import ParseError, parse_cluster_name
from corpusmap.stages.jobs import BatchJobRunner, MergeCounts, chunked
from corpusmap.stats import NamingStats

logger = logging.getLogger(__name__)

STAGE = "name"
ENTITY = "cluster"

_NAMING_SYSTEM_PROMPT = """\
You name groups of similar legal documents drafted by a law firm.
Given sample documents from one group, reply with a short category name
(at most 6 words) and a one-sentence description, both written in {language}.
Respond with a single JSON object and nothing else:
{{"name": "<category name>", "description": "<one sentence>"}}"""


def select_representatives(
    members: list[Document], vectors: dict[str, list[float]], sample_size: int
) -> list[Document]:
    """Return up to *sample_size* members nearest the centroid (cosine)."""
    with_vectors = [m for m in members if m.id in vectors]
    if not with_vectors:
        return members[:sample_size]
    matrix = np.asarray([vectors[m.id] for m in with_vectors], dtype=np.float32)
    centroid = matrix.mean(axis=0, keepdims=True)
    similarity = cosine_similarity(matrix, centroid).ravel()
    # Stable on ties so reruns pick the same samples.
    order = np.argsort(-similarity, kind="stable")
    return [with_vectors[i] for i in order[:sample_size]]


def build_naming_prompt(samples: list[Document], max_text_chars: int) -> str:
    parts = []
    for i, doc in enumerate(samples, 1):
        text = (doc.text or "").strip()[:max_text_chars] or "[No text extracted]"
        parts.append(f"--- Document {i}: {doc.file_name or '(unknown)'} ---\n{text}")
    return "Sample documents from the group:\n\n" + "\n\n".join(parts)


async def merge_cluster_names(
    repo: Repository, service: BatchService, handle: str
) -> MergeCounts:
    """Store names from *handle* for clusters that are still unnamed."""
    counts = MergeCounts()
    async for item in service.stream_batch_results(handle):
        try:
            entity_type, cluster_id = split_custom_id(item.custom_id)
        except ValueError:
            continue
        if entity_type != ENTITY:
            continue
        if not item.succeeded:
            logger.warning("name.item error cluster=%s handle=%s: %s", cluster_id, handle, item.error)
            continue
        parsed = parse_cluster_name(item.content)
        if isinstance(parsed, ParseError):
            logger.warning(
                "name.unparseable cluster=%s handle=%s: %s", cluster_id, handle, parsed.reason
            )
            continue
        cluster = repo.get_cluster(cluster_id)
        if cluster is None or cluster.name is not None:
            counts.skipped += 1
            continue
        repo.update_cluster_name(cluster_id, parsed.name, parsed.description)
        counts.written += 1
    logger.info("name.merge handle=%s named=%d skipped=%d", handle, counts.written, counts.skipped)
    return counts


class NamingStage:
    name = STAGE

    def __init__(
        self,
        repo: Repository,
        service: BatchService,
        cfg: NamingCfg,
        policy: PollPolicy,
        vec_table: str,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._service = service
        self._cfg = cfg
        self._vec_table = vec_table
        self._runner = BatchJobRunner(repo, service, policy, STAGE, sleep=sleep)

    def build_request(self, cluster: Cluster, vectors: dict[str, list[float]]) -> BatchRequest:
        members = self._repo.list_cluster_members(cluster.id)
        samples = select_representatives(members, vectors, self._cfg.sample_size)
        return BatchRequest(
            custom_id=make_custom_id(ENTITY, cluster.id),
            prompt=build_naming_prompt(samples, self._cfg.max_text_chars),
            system=_NAMING_SYSTEM_PROMPT.format(language=self._cfg.language),
            max_tokens=self._cfg.max_tokens,
        )

    async def _merge(self, handle: str, item_ids: list[str]) -> MergeCounts:
        return await merge_cluster_names(self._repo, self._service, handle)

    async def run(self, session_id: str) -> NamingStats:
        unresolved: list[str] = []
        def progress(current: int, total: int) -> None:
            self._repo.update_session_progress(
                session_id, STAGE, current, total, "Naming clusters"
            )

        open_jobs = self._repo.list_open_batch_jobs(session_id, STAGE)
        if open_jobs:
            report = await self._runner.settle_all(
                [(job.handle, job.item_id_list) for job in open_jobs], self._merge, progress
            )
            unresolved.extend(report.unresolved)

        covered: set[str] = set()
        for job in self._repo.list_open_batch_jobs(session_id, STAGE):
            covered.update(job.item_id_list)

        pending = [c for c in self._repo.find_unnamed_clusters(session_id) if c.id not in covered]
        if pending:
            vectors = dict(self._repo.get_embeddings(session_id, self._vec_table))
            jobs: list[tuple[str, list[str]]] = []
            for chunk in chunked(pending, 1_000):
                requests = [self.build_request(c, vectors) for c in chunk]
                item_ids = [c.id for c in chunk]
                handle = await self._runner.submit(session_id, requests, item_ids)
                if handle is not None:
                    jobs.append((handle, item_ids))
            if jobs:
                report = await self._runner.settle_all(jobs, self._merge, progress)
                unresolved.extend(report.unresolved)

        clusters = [c for c in self._repo.list_clusters(session_id) if not c.is_noise]
        named = sum(1 for c in clusters if c.name)
        stats = NamingStats(
            total=len(clusters),
            named=named,
            failed=len(clusters) - named,
            unresolved_batches=sorted(unresolved),
        )
        logger.info(
            "name.done session=%s clusters=%d named=%d unnamed=%d",
            session_id,
            stats.total,
            stats.named,
            stats.failed,
        )
        return stats
