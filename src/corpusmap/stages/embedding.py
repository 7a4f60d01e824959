"""Embedding stage: vectors for canonical FirmDrafted documents.

Documents are sent in batches of ``embedding.batch_size`` with at most
``embedding.concurrency`` requests in flight. Each batch is written as soon
as it returns. If a whole batch fails, its documents are retried one by one
so a single bad input only errors itself. Errored documents are terminal:
they are skipped on rerun and excluded from clustering.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from corpusmap.batch.base import EmbeddingService, EmbeddingServiceError
from corpusmap.config import EmbeddingCfg
from corpusmap.db.models import Document
from corpusmap.db.repository import Repository
from corpusmap.db.vectors import ensure_vec_table, model_to_slug
from corpusmap.stages.jobs import chunked
from corpusmap.stats import EmbeddingStats

logger = logging.getLogger(__name__)

STAGE = "embed"

_NO_TEXT = "[No text extracted]"


def embedding_text(doc: Document, max_chars: int) -> str:
    text = (doc.text or "").strip()
    if not text:
        text = " ".join(p for p in (doc.file_name, doc.email_subject) if p) or _NO_TEXT
    return text[:max_chars]


def vec_table_for(repo: Repository, cfg: EmbeddingCfg) -> str:
    """Create (if needed) and return the vec table for the configured model."""
    return ensure_vec_table(repo.connection, model_to_slug(cfg.model), cfg.dimensions)


class EmbeddingStage:
    name = STAGE

    def __init__(self, repo: Repository, service: EmbeddingService, cfg: EmbeddingCfg) -> None:
        self._repo = repo
        self._service = service
        self._cfg = cfg

    async def _embed_one(self, doc: Document) -> list[float] | str:
        try:
            vectors = await self._service.embed([embedding_text(doc, self._cfg.max_text_chars)])
        except EmbeddingServiceError as exc:
            return str(exc)
        return vectors[0]

    async def _embed_batch(self, docs: Sequence[Document]) -> list[list[float] | str]:
        """Return a vector or an error message per document."""
        texts = [embedding_text(d, self._cfg.max_text_chars) for d in docs]
        try:
            return list(await self._service.embed(texts))
        except EmbeddingServiceError as exc:
            if len(docs) == 1:
                return [str(exc)]
            logger.warning(
                "embed.batch failed (%s); retrying %d documents individually", exc, len(docs)
            )
        return [await self._embed_one(doc) for doc in docs]

    async def run(self, session_id: str) -> EmbeddingStats:
        table = vec_table_for(self._repo, self._cfg)
        eligible = self._repo.find_canonical_firm_drafted(session_id)
        todo = [d for d in eligible if not d.is_embedded and d.embedding_error is None]

        stats = EmbeddingStats(total=len(eligible), skipped=len(eligible) - len(todo))
        stats.embedded = sum(1 for d in eligible if d.is_embedded)
        stats.errored = sum(1 for d in eligible if not d.is_embedded and d.embedding_error)

        batches = chunked(todo, self._cfg.batch_size)
        semaphore = asyncio.Semaphore(self._cfg.concurrency)
        done = 0

        async def _run_batch(docs: Sequence[Document]) -> None:
            nonlocal done
            async with semaphore:
                outcomes = await self._embed_batch(docs)
            for doc, outcome in zip(docs, outcomes):
                if isinstance(outcome, str):
                    self._repo.mark_embedding_error(doc.id, outcome)
                    stats.errored += 1
                elif len(outcome) != self._cfg.dimensions:
                    self._repo.mark_embedding_error(
                        doc.id,
                        f"Expected {self._cfg.dimensions} dimensions, got {len(outcome)}",
                    )
                    stats.errored += 1
                else:
                    self._repo.update_embedding(table, doc.id, outcome)
                    stats.embedded += 1
            done += len(docs)
            self._repo.update_session_progress(
                session_id, STAGE, done, len(todo), "Embedding documents"
            )

        await asyncio.gather(*(_run_batch(chunk) for chunk in batches))

        logger.info(
            "embed.done session=%s total=%d embedded=%d errored=%d skipped=%d",
            session_id,
            stats.total,
            stats.embedded,
            stats.errored,
            stats.skipped,
        )
        return stats
