"""Bounded poll loop for batch handles.

Intervals grow geometrically up to a ceiling and shrink once the service
reports the batch is nearly done. The loop gives up after a fixed number of
polls or a wall-clock budget and raises ``BatchIncompleteError``, which
callers treat differently from an errored batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from corpusmap.batch.base import BatchIncompleteError, BatchService, BatchState, BatchStatus
from corpusmap.config import PollingCfg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPolicy:
    initial_interval: float = 30.0
    max_interval: float = 120.0
    backoff: float = 1.5
    max_attempts: int = 500
    max_duration: float = 14_400.0
    near_done_ratio: float = 0.9
    near_done_interval: float = 10.0

    @classmethod
    def from_config(cls, cfg: PollingCfg) -> PollPolicy:
        return cls(
            initial_interval=cfg.initial_interval,
            max_interval=cfg.max_interval,
            backoff=cfg.backoff,
            max_attempts=cfg.max_attempts,
            max_duration=cfg.max_duration,
        )

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> PollPolicy:
        """Zero-interval policy for tests and one-shot checks."""
        return cls(
            initial_interval=0.0,
            max_interval=0.0,
            max_attempts=max_attempts,
            near_done_interval=0.0,
        )


async def wait_for_batch(
    service: BatchService,
    handle: str,
    policy: PollPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_progress: Callable[[BatchState], None] | None = None,
) -> BatchState:
    """Poll *handle* until it is COMPLETED or ERRORED and return the final state.

    Raises:
        BatchIncompleteError: Still PENDING after ``max_attempts`` polls or
            ``max_duration`` seconds.
    """
    started = clock()
    interval = policy.initial_interval
    attempts = 0

    while attempts < policy.max_attempts:
        attempts += 1
        state = await service.get_batch_status(handle)
        if state.status is not BatchStatus.PENDING:
            logger.debug("batch %s -> %s after %d polls", handle, state.status.value, attempts)
            return state

        if on_progress is not None:
            on_progress(state)

        elapsed = clock() - started
        remaining = policy.max_duration - elapsed
        if remaining <= 0 or attempts >= policy.max_attempts:
            break

        delay = interval
        if state.total and state.fraction_done >= policy.near_done_ratio:
            delay = min(delay, policy.near_done_interval)
        delay = min(delay, remaining)
        logger.debug(
            "batch %s pending (%d/%d), next poll in %.1fs",
            handle,
            state.done,
            state.total,
            delay,
        )
        await sleep(delay)
        interval = min(interval * policy.backoff, policy.max_interval)

    raise BatchIncompleteError(handle, attempts, clock() - started)
