"""Pipeline state machine.

Main sequence (strictly forward)::

    NotStarted → Triaging → Deduplicating → Embedding → Clustering → Naming
               → ReadyForValidation → Completed

``Failed`` is reachable from any non-terminal status. A fresh run may start
only from ``NotStarted`` or ``Failed``. ``ReClustering`` is a side branch used
by manual reassignment: ``ReadyForValidation``/``Completed`` → ``ReClustering``
→ ``ReadyForValidation``. ``reset`` is the only way back to ``NotStarted``.
"""

from __future__ import annotations

from enum import Enum

from corpusmap.db.models import TERMINAL_STATUSES, PipelineStatus
from corpusmap.pipeline.errors import InvalidTransitionError

S = PipelineStatus


class Stage(str, Enum):
    """Resumable stages, in execution order."""

    TRIAGE = "triage"
    DEDUP = "dedup"
    EMBED = "embed"
    REDUCE = "reduce"
    CLUSTER = "cluster"
    NAME = "name"

    @property
    def status(self) -> PipelineStatus:
        return _STAGE_STATUS[self]

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: list[Stage] = list(Stage)

_STAGE_STATUS: dict[Stage, PipelineStatus] = {
    Stage.TRIAGE: S.TRIAGING,
    Stage.DEDUP: S.DEDUPLICATING,
    Stage.EMBED: S.EMBEDDING,
    Stage.REDUCE: S.CLUSTERING,
    Stage.CLUSTER: S.CLUSTERING,
    Stage.NAME: S.NAMING,
}

_RANK: dict[PipelineStatus, int] = {
    S.NOT_STARTED: 0,
    S.EXTRACTING: 1,
    S.TRIAGING: 2,
    S.DEDUPLICATING: 3,
    S.EMBEDDING: 4,
    S.CLUSTERING: 5,
    S.NAMING: 6,
    S.READY_FOR_VALIDATION: 7,
    S.COMPLETED: 8,
}

STARTABLE: frozenset[PipelineStatus] = frozenset([S.NOT_STARTED, S.FAILED])
RESETTABLE: frozenset[PipelineStatus] = frozenset(
    [S.FAILED, S.COMPLETED, S.READY_FOR_VALIDATION]
)
REASSIGNABLE: frozenset[PipelineStatus] = frozenset([S.READY_FOR_VALIDATION, S.COMPLETED])


def is_in_progress(status: PipelineStatus) -> bool:
    return status not in STARTABLE and status not in TERMINAL_STATUSES


def can_start(status: PipelineStatus) -> bool:
    return status in STARTABLE


def check_transition(
    current: PipelineStatus, target: PipelineStatus, *, restart: bool = False
) -> None:
    """Raise InvalidTransitionError unless *current* → *target* is allowed.

    ``restart`` marks the first transition of a (re)started run, which may
    leave ``NotStarted``/``Failed`` for any stage status.
    """
    if current == target and target not in TERMINAL_STATUSES:
        return
    if target is S.FAILED:
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(current.value, target.value, "already terminal")
        return
    if target is S.NOT_STARTED:
        raise InvalidTransitionError(current.value, target.value, "use reset")
    if restart and current in STARTABLE and target in _STAGE_STATUS.values():
        return

    if target is S.RECLUSTERING:
        if current in REASSIGNABLE:
            return
        raise InvalidTransitionError(
            current.value, target.value, "reassignment needs a finished session"
        )
    if current is S.RECLUSTERING:
        if target is S.READY_FOR_VALIDATION:
            return
        raise InvalidTransitionError(current.value, target.value)

    if current in STARTABLE and current is not S.NOT_STARTED:
        raise InvalidTransitionError(current.value, target.value, "start a new run first")
    if _RANK[target] <= _RANK[current]:
        raise InvalidTransitionError(current.value, target.value, "status may not regress")
