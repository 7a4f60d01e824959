"""Pipeline orchestrator: sequences the stages for one session.

All state lives in the database. A ``Pipeline`` holds only service clients,
so any process can pick up any session. Each stage is persisted as a status
transition before it starts; its statistics are written in one call when it
finishes. An exception inside a stage marks the session ``Failed`` with the
captured message and stops the run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from corpusmap.batch.base import BatchService, EmbeddingService
from corpusmap.batch.litellm_batch import LiteLLMBatchService, LiteLLMEmbeddingService
from corpusmap.batch.poller import PollPolicy
from corpusmap.config import CorpusmapConfig
from corpusmap.db.models import PipelineStatus, Session
from corpusmap.db.repository import Repository
from corpusmap.pipeline.errors import (
    InvalidTransitionError,
    PipelineAlreadyRunningError,
    SessionNotFoundError,
)
from corpusmap.pipeline.status import (
    RESETTABLE,
    STAGE_ORDER,
    Stage,
    can_start,
    check_transition,
    is_in_progress,
)
from corpusmap.stages.clustering import ClusteringStage
from corpusmap.stages.dedup import DedupStage
from corpusmap.stages.embedding import EmbeddingStage, vec_table_for
from corpusmap.stages.naming import NamingStage
from corpusmap.stages.reduction import ReducedVectors, ReductionStage
from corpusmap.stages.triage import TriageStage

logger = logging.getLogger(__name__)


class Pipeline:
    """Run, resume and reset the categorization pipeline.

    Args:
        repo: Open repository.
        cfg: Loaded configuration.
        triage_service: Batch service for classification (default: LiteLLM,
            ``cfg.triage.model``).
        naming_service: Batch service for cluster names (default: LiteLLM,
            ``cfg.naming.model``).
        embedding_service: Embedding service (default: LiteLLM,
            ``cfg.embedding.model``).
        policy: Poll policy; defaults to ``cfg.polling``.
        sleep: Injected sleep for the poll loops.
    """

    def __init__(
        self,
        repo: Repository,
        cfg: CorpusmapConfig,
        *,
        triage_service: BatchService | None = None,
        naming_service: BatchService | None = None,
        embedding_service: EmbeddingService | None = None,
        policy: PollPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._cfg = cfg
        self._triage_service = triage_service or LiteLLMBatchService(cfg.triage.model)
        self._naming_service = naming_service or LiteLLMBatchService(cfg.naming.model)
        self._embedding_service = embedding_service or LiteLLMEmbeddingService(
            cfg.embedding.model, cfg.embedding.dimensions
        )
        self._policy = policy or PollPolicy.from_config(cfg.polling)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, session_id: str) -> Session:
        """Run every stage in order. Returns the session in its final state.

        Raises:
            SessionNotFoundError: Unknown session.
            PipelineAlreadyRunningError: Status is neither NotStarted nor Failed.
        """
        return await self.run_from_stage(session_id, Stage.TRIAGE)

    async def run_from_stage(
        self, session_id: str, stage: Stage | str, *, force: bool = False
    ) -> Session:
        """Re-enter the sequence at *stage* and run through to the end.

        ``force`` abandons a run whose status was left in progress by a killed
        process: the session is first marked Failed, then restarted.
        """
        stage = Stage(stage)
        session = self._require(session_id)
        status = session.pipeline_status

        if not can_start(status):
            if not force:
                raise PipelineAlreadyRunningError(session_id, status.value)
            if not is_in_progress(status):
                raise InvalidTransitionError(
                    status.value, stage.status.value, "reset the session first"
                )
            logger.warning(
                "pipeline.force session=%s abandoning in-progress status %s",
                session_id,
                status.value,
            )
            self._repo.update_session_status(
                session_id,
                PipelineStatus.FAILED,
                f"Interrupted run in {status.value} abandoned by forced resume",
            )

        return await self._execute(session_id, stage)

    def reset(self, session_id: str) -> Session:
        """Return the session to NotStarted. Per-document progress is kept.

        Raises:
            InvalidTransitionError: Status is not Failed, Completed or
                ReadyForValidation.
        """
        session = self._require(session_id)
        if session.pipeline_status not in RESETTABLE:
            raise InvalidTransitionError(
                session.pipeline_status.value,
                PipelineStatus.NOT_STARTED.value,
                "reset is only allowed from Failed, Completed or ReadyForValidation",
            )
        self._repo.reset_session(session_id)
        logger.info("pipeline.reset session=%s", session_id)
        return self._require(session_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> Session:
        session = self._repo.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _transition(
        self, session_id: str, target: PipelineStatus, *, restart: bool = False
    ) -> None:
        current = self._require(session_id).pipeline_status
        check_transition(current, target, restart=restart)
        if current != target:
            self._repo.update_session_status(session_id, target)
            logger.info("pipeline.status session=%s %s -> %s", session_id, current.value, target.value)

    async def _execute(self, session_id: str, start: Stage) -> Session:
        self._repo.refresh_total_documents(session_id)
        self._repo.start_pipeline(session_id)
        vec_table = vec_table_for(self._repo, self._cfg.embedding)

        triage = TriageStage(
            self._repo, self._triage_service, self._cfg.triage, self._policy, sleep=self._sleep
        )
        dedup = DedupStage(self._repo)
        embedding = EmbeddingStage(self._repo, self._embedding_service, self._cfg.embedding)
        reducer = ReductionStage(self._repo, self._cfg.reduction, vec_table)
        clustering = ClusteringStage(self._repo, self._cfg.clustering, reducer)
        naming = NamingStage(
            self._repo,
            self._naming_service,
            self._cfg.naming,
            self._policy,
            vec_table,
            sleep=self._sleep,
        )

        reduced: ReducedVectors | None = None

        def _reduce(sid: str) -> None:
            nonlocal reduced
            # Nothing to recompute when the stored clustering already covers everyone.
            reduced = None if clustering.is_current(sid) else reducer.run(sid)

        steps: dict[Stage, Callable[[str], object]] = {
            Stage.TRIAGE: triage.run,
            Stage.DEDUP: dedup.run,
            Stage.EMBED: embedding.run,
            Stage.REDUCE: _reduce,
            Stage.CLUSTER: lambda sid: clustering.run(sid, reduced),
            Stage.NAME: naming.run,
        }

        logger.info("pipeline.start session=%s from=%s", session_id, start.value)
        first = True
        current: Stage = start
        try:
            for current in STAGE_ORDER[start.index :]:
                self._transition(session_id, current.status, restart=first)
                first = False
                result = steps[current](session_id)
                if inspect.isawaitable(result):
                    result = await result
                if result is not None:
                    with self._repo.transaction():
                        self._repo.update_session_stats(session_id, result)
            self._transition(session_id, PipelineStatus.READY_FOR_VALIDATION)
        except Exception as exc:
            logger.exception("pipeline.failed session=%s stage=%s", session_id, current.value)
            self._repo.update_session_status(
                session_id,
                PipelineStatus.FAILED,
                f"{current.value}: {type(exc).__name__}: {exc}",
            )
            return self._require(session_id)

        logger.info("pipeline.done session=%s", session_id)
        return self._require(session_id)
