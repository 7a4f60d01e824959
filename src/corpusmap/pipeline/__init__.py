"""Pipeline orchestration, recovery and manual reassignment."""

from corpusmap.pipeline.errors import (
    InvalidTransitionError,
    PipelineAlreadyRunningError,
    PipelineError,
    ReassignmentError,
    SessionNotFoundError,
)
from corpusmap.pipeline.orchestrator import Pipeline
from corpusmap.pipeline.reassign import reassign_document
from corpusmap.pipeline.recovery import RecoveryReport, recover_batch, recover_batches
from corpusmap.pipeline.status import Stage

__all__ = [
    "InvalidTransitionError",
    "Pipeline",
    "PipelineAlreadyRunningError",
    "PipelineError",
    "ReassignmentError",
    "RecoveryReport",
    "SessionNotFoundError",
    "Stage",
    "reassign_document",
    "recover_batch",
    "recover_batches",
]
