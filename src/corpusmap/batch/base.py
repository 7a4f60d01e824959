"""Batch-service contract: request/result types, protocols and local validation.

A batch service accepts many prompts at once and answers asynchronously.
Callers submit a list of ``BatchRequest``s, keep the returned handle, poll
``get_batch_status`` until it leaves PENDING and then stream the per-item
results. The embedding service is the synchronous counterpart used by the
embedding stage.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

# Service limits.
MAX_REQUESTS_PER_BATCH = 10_000
MAX_CUSTOM_ID_CHARS = 64
MAX_ESTIMATED_TOKENS = 10_000_000
CHARS_PER_TOKEN = 4

# "entity_type:entity_id", e.g. "document:7f3a..." or "cluster:12".
CUSTOM_ID_RE = re.compile(r"^[a-z_]+:[A-Za-z0-9_.\-]+$")
ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BatchError(RuntimeError):
    """Base class for batch-level problems."""


class BatchValidationError(BatchError, ValueError):
    """The request set was rejected before submission."""


class BatchIncompleteError(BatchError):
    """The poll loop gave up before the batch reached a terminal state.

    Distinct from an errored batch: the batch may still finish and its handle
    can be passed to recovery later.
    """

    def __init__(self, handle: str, attempts: int, elapsed: float) -> None:
        self.handle = handle
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(
            f"Batch {handle} still pending after {attempts} polls ({elapsed:.0f}s)"
        )


class EmbeddingServiceError(RuntimeError):
    """An embedding request failed as a whole."""


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class BatchStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass(frozen=True)
class BatchState:
    """One poll observation. ``done``/``total`` count items when the service reports them."""

    status: BatchStatus
    total: int = 0
    done: int = 0
    error: str | None = None

    @property
    def fraction_done(self) -> float:
        return self.done / self.total if self.total else 0.0


@dataclass(frozen=True)
class BatchRequest:
    custom_id: str
    prompt: str
    system: str = ""
    max_tokens: int = 256
    temperature: float = 0.0

    @property
    def estimated_tokens(self) -> int:
        return (len(self.system) + len(self.prompt)) // CHARS_PER_TOKEN + self.max_tokens


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome for one item: exactly one of ``content`` / ``error`` is set."""

    custom_id: str
    content: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def make_custom_id(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


def split_custom_id(custom_id: str) -> tuple[str, str]:
    """Return ``(entity_type, entity_id)``; raises ValueError on a malformed id."""
    entity_type, sep, entity_id = custom_id.partition(":")
    if not sep or not entity_type or not entity_id:
        raise ValueError(f"Malformed custom id: {custom_id!r}")
    return entity_type, entity_id


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class BatchService(Protocol):
    async def submit_batch(self, requests: Sequence[BatchRequest]) -> str:
        """Submit *requests* and return an opaque batch handle."""
        ...

    async def get_batch_status(self, handle: str) -> BatchState: ...

    def stream_batch_results(self, handle: str) -> AsyncIterator[BatchItemResult]: ...


@runtime_checkable
class EmbeddingService(Protocol):
    dimensions: int

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per text, in order. Raises EmbeddingServiceError."""
        ...


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_requests(requests: Sequence[BatchRequest]) -> int:
    """Check *requests* against the service limits. Returns the token estimate.

    Raises:
        BatchValidationError: Empty list, too many requests, duplicate or
            malformed custom ids, or estimated tokens over the safety limit.
    """
    if not requests:
        raise BatchValidationError("Batch must contain at least one request")
    if len(requests) > MAX_REQUESTS_PER_BATCH:
        raise BatchValidationError(
            f"Batch has {len(requests)} requests; the limit is {MAX_REQUESTS_PER_BATCH}"
        )

    seen: set[str] = set()
    for req in requests:
        if req.custom_id in seen:
            raise BatchValidationError(f"Duplicate custom id: {req.custom_id}")
        seen.add(req.custom_id)
        if len(req.custom_id) > MAX_CUSTOM_ID_CHARS:
            raise BatchValidationError(
                f"Custom id longer than {MAX_CUSTOM_ID_CHARS} characters: {req.custom_id}"
            )
        if not CUSTOM_ID_RE.match(req.custom_id):
            raise BatchValidationError(
                f"Custom id must look like 'entity_type:entity_id': {req.custom_id}"
            )

    estimated = sum(req.estimated_tokens for req in requests)
    if estimated > MAX_ESTIMATED_TOKENS:
        raise BatchValidationError(
            f"Estimated {estimated} tokens exceeds the {MAX_ESTIMATED_TOKENS} safety limit"
        )
    return estimated
