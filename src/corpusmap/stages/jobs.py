"""Submit-and-settle helpers shared by the batch-backed stages.

Every submitted batch is written to the ``batch_jobs`` ledger before it is
polled, so a crash between submission and merge leaves a handle that the
next run (or ``recover``) can pick up. Batch-level problems are logged with
the handle and recorded on the ledger; they never abort the stage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from corpusmap.batch.base import (
    BatchError,
    BatchIncompleteError,
    BatchRequest,
    BatchService,
    BatchStatus,
)
from corpusmap.batch.poller import PollPolicy, wait_for_batch
from corpusmap.db.models import BatchJobStatus
from corpusmap.db.repository import Repository

logger = logging.getLogger(__name__)

# merge(handle, item_ids) writes the batch results into the repository.
MergeFn = Callable[[str, list[str]], Awaitable[object]]

@dataclass
class MergeCounts:
    """Results written versus skipped (already processed) for one handle."""

    written: int = 0
    skipped: int = 0

@dataclass
class JobsReport:
    settled: int = 0
    unresolved: list[str] = field(default_factory=list)

def chunked(items: Sequence, size: int) -> list[Sequence]:
    return [items[i : i + size] for i in range(0, len(items), size)]

class BatchJobRunner:
    """Submit batches for one stage and wait for them concurrently.

    Args:
        repo: Open repository (ledger + results).
        service: Batch service to submit to.
        policy: Poll policy for each handle.
        stage: Ledger stage name ('triage' or 'name').
        sleep: Injected sleep for the poll loop.
    """

    def __init__(
        self,
        repo: Repository,
        service: BatchService,
        policy: PollPolicy,
        stage: str,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._service = service
        self._policy = policy
        self._stage = stage
        self._sleep = sleep

    async def submit(
        self, session_id: str, requests: Sequence[BatchRequest], item_ids: list[str]
    ) -> str | None:
        """Submit one batch and record it on the ledger.

        Returns the handle, or None when the service (or local validation)
        rejected the batch. Rejected items stay unprocessed for the next run.
        """
        try:
            handle = await self._service.submit_batch(requests)
        except BatchError as exc:
            logger.warning(
                "%s.batch rejected session=%s items=%d: %s",
                self._stage,
                session_id,
                len(item_ids),
                exc,
            )
            return None
        except Exception as exc:
            logger.warning(
                "%s.batch submission failed session=%s items=%d: %s: %s",
                self._stage,
                session_id,
                len(item_ids),
                type(exc).__name__,
                exc,
            )
            return None
        self._repo.record_batch_job(handle, session_id, self._stage, item_ids)
        logger.info(
            "%s.batch submitted handle=%s items=%d", self._stage, handle, len(item_ids)
        )
        return handle

    async def settle(self, handle: str, item_ids: list[str], merge: MergeFn) -> bool:
        """Wait for *handle* and merge its results. Returns True if merged.

        Any failure while polling or fetching results only affects this
        handle: it stays open on the ledger for ``recover`` or the next run.
        """
        try:
            state = await wait_for_batch(
                self._service, handle, self._policy, sleep=self._sleep
            )
        except BatchIncompleteError as exc:
            logger.warning(
                "%s.batch incomplete handle=%s: %s (run 'corpusmap recover %s' later)",
                self._stage,
                handle,
                exc,
                handle,
            )
            self._repo.update_batch_job(handle, BatchJobStatus.INCOMPLETE, str(exc))
            return False
        except Exception as exc:
            return self._left_open(handle, "poll", exc)

        if state.status is BatchStatus.ERRORED:
            logger.warning(
                "%s.batch errored handle=%s: %s", self._stage, handle, state.error
            )
            self._repo.update_batch_job(handle, BatchJobStatus.ERRORED, state.error)
            return False

        try:
            await merge(handle, item_ids)
        except Exception as exc:
            return self._left_open(handle, "merge", exc)
        self._repo.update_batch_job(handle, BatchJobStatus.COMPLETED)
        return True

    def _left_open(self, handle: str, step: str, exc: Exception) -> bool:
        error = f"{type(exc).__name__}: {exc}"
        logger.warning(
            "%s.batch %s failed handle=%s: %s (run 'corpusmap recover %s' later)",
            self._stage,
            step,
            handle,
            error,
            handle,
        )
        self._repo.update_batch_job(handle, BatchJobStatus.INCOMPLETE, error)
        return False

    async def settle_all(
        self,
        jobs: Sequence[tuple[str, list[str]]],
        merge: MergeFn,
        on_settled: Callable[[int, int], None] | None = None,
    ) -> JobsReport:
        """Settle every ``(handle, item_ids)`` pair concurrently.

        A timeout, errored batch or transport failure only affects its own items.
        """
        report = JobsReport()
        total = len(jobs)

        async def _one(handle: str, item_ids: list[str]) -> None:
            if await self.settle(handle, item_ids, merge):
                report.settled += 1
            else:
                report.unresolved.append(handle)
            if on_settled is not None:
                on_settled(report.settled + len(report.unresolved), total)

        await asyncio.gather(*(_one(h, ids) for h, ids in jobs))
        report.unresolved.sort()
        return report
