"""Shared pytest fixtures and in-memory service fakes."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Sequence

import numpy as np
import pytest

from corpusmap.batch.base import (
    BatchItemResult,
    BatchRequest,
    BatchState,
    BatchStatus,
    EmbeddingServiceError,
    validate_requests,
)
from corpusmap.db.connection import Database
from corpusmap.db.repository import Repository
from corpusmap.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".corpusmap.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fake batch service
# ---------------------------------------------------------------------------


def triage_reply(status: str, confidence: float = 0.9, reason: str = "test") -> str:
    return json.dumps({"status": status, "confidence": confidence, "reason": reason})


class FakeBatchService:
    """Scriptable in-memory batch service.

    Args:
        respond: ``request -> content`` for each submitted item. Return a
            ``BatchItemResult`` to script an item-level error.
        statuses: ``handle -> [BatchState, ...]`` consumed one per poll; the
            last entry repeats. Unscripted handles complete immediately.
    """

    def __init__(
        self,
        respond: Callable[[BatchRequest], str | BatchItemResult] | None = None,
        statuses: dict[str, list[BatchState]] | None = None,
    ) -> None:
        self.respond = respond or (lambda req: triage_reply("FirmDrafted"))
        self.statuses = statuses or {}
        self.submitted: dict[str, list[BatchRequest]] = {}
        self.submit_error: Exception | None = None
        self.status_calls: list[str] = []
        self.omit: set[str] = set()

    async def submit_batch(self, requests: Sequence[BatchRequest]) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        validate_requests(requests)
        handle = f"batch-{len(self.submitted) + 1}"
        self.submitted[handle] = list(requests)
        return handle

    async def get_batch_status(self, handle: str) -> BatchState:
        self.status_calls.append(handle)
        script = self.statuses.get(handle)
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        total = len(self.submitted.get(handle, []))
        return BatchState(BatchStatus.COMPLETED, total=total, done=total)

    async def stream_batch_results(self, handle: str):
        for req in self.submitted.get(handle, []):
            if req.custom_id in self.omit:
                continue
            reply = self.respond(req)
            if isinstance(reply, BatchItemResult):
                yield reply
            else:
                yield BatchItemResult(req.custom_id, content=reply)

    @property
    def submitted_ids(self) -> list[str]:
        return [r.custom_id for reqs in self.submitted.values() for r in reqs]


PENDING = BatchState(BatchStatus.PENDING, total=10, done=1)


# ---------------------------------------------------------------------------
# Fake embedding service
# ---------------------------------------------------------------------------


TOPICS = ("lease", "employment", "merger", "loan")


def topic_vector(text: str, dimensions: int) -> list[float]:
    """Unit vector near the axis of the first topic word in *text*, with
    small deterministic jitter derived from the text."""
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    rng = np.random.default_rng(seed)
    vec = rng.normal(0.0, 0.02, dimensions)
    for axis, word in enumerate(TOPICS):
        if word in text.lower():
            vec[axis % dimensions] += 1.0
            break
    else:
        vec[-1] += 1.0
    vec /= np.linalg.norm(vec)
    return vec.tolist()


class FakeEmbeddingService:
    def __init__(self, dimensions: int = 8, fail_on: str | None = None) -> None:
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls: list[list[str]] = []
        self.wrong_dimensions: str | None = None

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise EmbeddingServiceError(f"rejected input containing {self.fail_on!r}")
        vectors = []
        for text in texts:
            dims = self.dimensions
            if self.wrong_dimensions is not None and self.wrong_dimensions in text:
                dims = self.dimensions + 1
            vectors.append(topic_vector(text, dims))
        return vectors

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]
