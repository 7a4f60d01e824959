"""Batch and embedding service clients."""

from corpusmap.batch.base import (
    BatchError,
    BatchIncompleteError,
    BatchItemResult,
    BatchRequest,
    BatchService,
    BatchState,
    BatchStatus,
    BatchValidationError,
    EmbeddingService,
    EmbeddingServiceError,
    make_custom_id,
    split_custom_id,
    validate_requests,
)
from corpusmap.batch.poller import PollPolicy, wait_for_batch

__all__ = [
    "BatchError",
    "BatchIncompleteError",
    "BatchItemResult",
    "BatchRequest",
    "BatchService",
    "BatchState",
    "BatchStatus",
    "BatchValidationError",
    "EmbeddingService",
    "EmbeddingServiceError",
    "PollPolicy",
    "make_custom_id",
    "split_custom_id",
    "validate_requests",
    "wait_for_batch",
]
