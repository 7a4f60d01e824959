"""Triage stage: classify every untriaged document through the batch service.

Each document becomes one request with custom id ``document:<id>``. Results
are written with a check-and-set (only rows whose triage status is still
NULL), which makes re-running the stage, reconciling a ledger job and
detached recovery all safe to repeat.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from corpusmap.batch.base import (
    BatchItemResult,
    BatchRequest,
    BatchService,
    make_custom_id,
    split_custom_id,
)
from corpusmap.batch.poller import PollPolicy
from corpusmap.config import TriageCfg
from corpusmap.db.models import Document, TriageStatus
from corpusmap.db.repository import Repository
from corpusmap.parsing import ParseError, parse_triage
from corpusmap.stages.jobs import BatchJobRunner, MergeCounts, chunked
from corpusmap.stats import TriageStats

logger = logging.getLogger(__name__)

STAGE = "triage"
ENTITY = "document"

_NO_TEXT = "[No text extracted]"
_MISSING_RESULT = "No result returned for this document by the batch service"

TRIAGE_SYSTEM_PROMPT = """\
You triage documents recovered from a law firm's email archive.
Classify the document into exactly one category:

- FirmDrafted: drafted by the firm itself (contracts, memos, legal opinions,
  submissions, letters written by the firm's lawyers).
- ThirdParty: authored by someone else (clients, opposing counsel,
  counterparties, authorities other than courts).
- CourtDoc: issued by a court (judgments, rulings, summons, court orders,
  hearing minutes).
- Irrelevant: no legal substance (newsletters, invoices, signatures,
  personal or administrative mail, blank scans).
- Uncertain: not enough information to decide.

Respond with a single JSON object and nothing else:
{"status": "<category>", "confidence": <0.0-1.0>, "reason": "<one short sentence>"}"""


def build_triage_prompt(doc: Document, max_text_chars: int) -> str:
    """Metadata header followed by the first *max_text_chars* of text."""
    lines = [f"File name: {doc.file_name or '(unknown)'}"]
    if doc.folder_path:
        lines.append(f"Folder: {doc.folder_path}")
    if doc.email_subject:
        lines.append(f"Email subject: {doc.email_subject}")
    if doc.email_sender:
        lines.append(f"Email sender: {doc.email_sender}")
    if doc.email_date:
        lines.append(f"Email date: {doc.email_date}")
    text = (doc.text or "").strip()
    body = text[:max_text_chars] if text else _NO_TEXT
    return "\n".join(lines) + "\n\nDocument text:\n" + body


def build_triage_request(doc: Document, cfg: TriageCfg) -> BatchRequest:
    return BatchRequest(
        custom_id=make_custom_id(ENTITY, doc.id),
        prompt=build_triage_prompt(doc, cfg.max_text_chars),
        system=TRIAGE_SYSTEM_PROMPT,
        max_tokens=cfg.max_tokens,
        temperature=cfg.temperature,
    )


def outcome_for(item: BatchItemResult) -> tuple[TriageStatus, float, str]:
    """Map one batch item to ``(status, confidence, reason)``.

    Item errors and unparseable output become Uncertain with confidence 0.
    """
    if not item.succeeded:
        return TriageStatus.UNCERTAIN, 0.0, f"Batch item error: {item.error}"
    parsed = parse_triage(item.content)
    if isinstance(parsed, ParseError):
        return TriageStatus.UNCERTAIN, 0.0, f"Unparseable classification: {parsed.reason}"
    return parsed.status, parsed.confidence, parsed.reason


async def merge_triage_results(
    repo: Repository,
    service: BatchService,
    handle: str,
    expected_ids: Iterable[str] | None = None,
) -> MergeCounts:
    """Write triage outcomes from *handle* for documents that are still untriaged.

    When *expected_ids* is given, documents the batch returned nothing for are
    marked Uncertain as well.
    """
    counts = MergeCounts()
    seen: set[str] = set()
    async for item in service.stream_batch_results(handle):
        try:
            entity_type, doc_id = split_custom_id(item.custom_id)
        except ValueError:
            logger.warning("triage.merge handle=%s unreadable custom id %r", handle, item.custom_id)
            continue
        if entity_type != ENTITY:
            continue
        seen.add(doc_id)
        status, confidence, reason = outcome_for(item)
        if repo.update_triage(doc_id, status, confidence, reason):
            counts.written += 1
        else:
            counts.skipped += 1

    for doc_id in sorted(set(expected_ids or ()) - seen):
        if repo.update_triage(doc_id, TriageStatus.UNCERTAIN, 0.0, _MISSING_RESULT):
            counts.written += 1
        else:
            counts.skipped += 1

    logger.info(
        "triage.merge handle=%s written=%d skipped=%d", handle, counts.written, counts.skipped
    )
    return counts


class TriageStage:
    """Classify untriaged documents of a session.

    Open ledger jobs are reconciled before anything new is submitted, and
    documents covered by a job that is still unresolved are not resubmitted.
    """

    name = STAGE

    def __init__(
        self,
        repo: Repository,
        service: BatchService,
        cfg: TriageCfg,
        policy: PollPolicy,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._service = service
        self._cfg = cfg
        self._runner = BatchJobRunner(repo, service, policy, STAGE, sleep=sleep)

    async def _merge(self, handle: str, item_ids: list[str]) -> MergeCounts:
        return await merge_triage_results(self._repo, self._service, handle, item_ids)

    def _progress(self, session_id: str, message: str) -> Callable[[int, int], None]:
        def _update(current: int, total: int) -> None:
            self._repo.update_session_progress(session_id, STAGE, current, total, message)

        return _update

    async def run(self, session_id: str) -> TriageStats:
        unresolved: list[str] = []
        batches = 0

        # 1. Reconcile jobs left open by an earlier run.
        open_jobs = self._repo.list_open_batch_jobs(session_id, STAGE)
        if open_jobs:
            logger.info("triage.reconcile session=%s open_jobs=%d", session_id, len(open_jobs))
            report = await self._runner.settle_all(
                [(job.handle, job.item_id_list) for job in open_jobs],
                self._merge,
                self._progress(session_id, "Reconciling submitted batches"),
            )
            batches += len(open_jobs)
            unresolved.extend(report.unresolved)

        # Items of errored jobs are resubmitted; items of still-pending jobs are not.
        covered: set[str] = set()
        for job in self._repo.list_open_batch_jobs(session_id, STAGE):
            covered.update(job.item_id_list)

        # 2. Submit whatever is still untriaged.
        pending = [d for d in self._repo.find_untriaged(session_id) if d.id not in covered]
        jobs: list[tuple[str, list[str]]] = []
        for chunk in chunked(pending, self._cfg.batch_size):
            requests = [build_triage_request(doc, self._cfg) for doc in chunk]
            item_ids = [doc.id for doc in chunk]
            handle = await self._runner.submit(session_id, requests, item_ids)
            if handle is not None:
                jobs.append((handle, item_ids))

        if jobs:
            report = await self._runner.settle_all(
                jobs,
                self._merge,
                self._progress(session_id, "Classifying documents"),
            )
            batches += len(jobs)
            unresolved.extend(report.unresolved)

        counts = self._repo.count_triage_outcomes(session_id)
        untriaged = counts.pop(None, 0)
        stats = TriageStats(
            counts={status.value: counts.get(status.value, 0) for status in TriageStatus},
            untriaged=untriaged,
            submitted=sum(len(ids) for _, ids in jobs),
            batches=batches,
            unresolved_batches=sorted(unresolved),
        )
        logger.info(
            "triage.done session=%s triaged=%d untriaged=%d unresolved_batches=%d",
            session_id,
            stats.total_triaged,
            untriaged,
            len(stats.unresolved_batches),
        )
        return stats
