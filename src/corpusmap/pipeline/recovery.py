"""Detached recovery: re-fetch batch results from known handles.

Works without any in-memory state from the run that submitted the batches.
Results are only written for documents (or clusters) that are still
unprocessed, so running recovery twice on the same handle writes nothing the
second time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from corpusmap.batch.base import BatchService, BatchStatus
from corpusmap.db.models import BatchJobStatus
from corpusmap.db.repository import Repository
from corpusmap.stages import naming, triage

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    handle: str
    stage: str
    status: str  # recovered | pending | errored
    written: int = 0
    skipped: int = 0
    error: str | None = None


def pending_handles(repo: Repository, session_id: str, stage: str | None = None) -> list[str]:
    """Handles recorded on the ledger whose results were never merged."""
    return [job.handle for job in repo.list_open_batch_jobs(session_id, stage)]


async def recover_batch(
    repo: Repository,
    service: BatchService,
    handle: str,
    *,
    stage: str | None = None,
) -> RecoveryReport:
    """Merge the results of one handle if the batch has finished.

    The stage comes from the ledger when the handle is recorded there,
    otherwise from *stage* (default: triage).
    """
    job = repo.get_batch_job(handle)
    stage = job.stage if job is not None else (stage or triage.STAGE)

    state = await service.get_batch_status(handle)
    if state.status is BatchStatus.PENDING:
        logger.info("recover handle=%s still pending (%d/%d)", handle, state.done, state.total)
        return RecoveryReport(handle, stage, "pending")
    if state.status is BatchStatus.ERRORED:
        logger.warning("recover handle=%s errored: %s", handle, state.error)
        if job is not None:
            repo.update_batch_job(handle, BatchJobStatus.ERRORED, state.error)
        return RecoveryReport(handle, stage, "errored", error=state.error)

    if stage == naming.STAGE:
        counts = await naming.merge_cluster_names(repo, service, handle)
    else:
        expected = job.item_id_list if job is not None else None
        counts = await triage.merge_triage_results(repo, service, handle, expected)

    if job is not None:
        repo.update_batch_job(handle, BatchJobStatus.RECOVERED)
    logger.info(
        "recover handle=%s stage=%s written=%d skipped=%d",
        handle,
        stage,
        counts.written,
        counts.skipped,
    )
    return RecoveryReport(handle, stage, "recovered", counts.written, counts.skipped)


async def recover_batches(
    repo: Repository,
    service: BatchService,
    handles: Iterable[str],
    *,
    stage: str | None = None,
) -> list[RecoveryReport]:
    """Recover each handle in turn. Handles are independent of each other."""
    return [await recover_batch(repo, service, h, stage=stage) for h in handles]
