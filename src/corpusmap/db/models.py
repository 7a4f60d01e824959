"""Domain models for the corpusmap database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


class TriageStatus(str, Enum):
    FIRM_DRAFTED = "FirmDrafted"
    THIRD_PARTY = "ThirdParty"
    IRRELEVANT = "Irrelevant"
    COURT_DOC = "CourtDoc"
    UNCERTAIN = "Uncertain"


class PipelineStatus(str, Enum):
    """Persisted pipeline status values (wire-visible)."""

    NOT_STARTED = "NotStarted"
    EXTRACTING = "Extracting"
    TRIAGING = "Triaging"
    DEDUPLICATING = "Deduplicating"
    EMBEDDING = "Embedding"
    CLUSTERING = "Clustering"
    RECLUSTERING = "ReClustering"
    NAMING = "Naming"
    READY_FOR_VALIDATION = "ReadyForValidation"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_STATUSES: frozenset[PipelineStatus] = frozenset(
    [PipelineStatus.READY_FOR_VALIDATION, PipelineStatus.COMPLETED, PipelineStatus.FAILED]
)


class BatchJobStatus(str, Enum):
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    ERRORED = "errored"
    INCOMPLETE = "incomplete"
    RECOVERED = "recovered"


@dataclass
class Session:
    id: str
    total_documents: int = 0
    pipeline_status: PipelineStatus = PipelineStatus.NOT_STARTED
    pipeline_started_at: str | None = None
    stage_started_at: str | None = None
    pipeline_completed_at: str | None = None
    pipeline_error: str | None = None
    progress: str = field(default_factory=lambda: "{}")
    created_at: str | None = None

    @property
    def progress_dict(self) -> dict:
        return json.loads(self.progress or "{}")


@dataclass
class Document:
    id: str
    session_id: str
    text: str = ""
    file_name: str = ""
    folder_path: str = ""
    email_subject: str | None = None
    email_sender: str | None = None
    email_date: str | None = None
    content_hash: str | None = None
    triage_status: TriageStatus | None = None
    triage_confidence: float | None = None
    triage_reason: str | None = None
    duplicate_group_id: str | None = None
    is_canonical: bool | None = None
    embedded_at: str | None = None
    embedding_error: str | None = None
    cluster_id: str | None = None
    cluster_confidence: float | None = None
    created_at: str | None = None
    seq: int | None = None  # set after insert; key into the vec table

    @property
    def is_embedded(self) -> bool:
        return self.embedded_at is not None


@dataclass
class Cluster:
    id: str
    session_id: str
    member_count: int = 0
    is_noise: bool = False
    name: str | None = None
    description: str | None = None
    status: str = "Pending"
    created_at: str | None = None

    @property
    def display_name(self) -> str:
        if self.is_noise:
            return "noise"
        return self.name or "unnamed"


@dataclass
class BatchJob:
    handle: str
    session_id: str
    stage: str
    item_ids: str = field(default_factory=lambda: "[]")
    status: BatchJobStatus = BatchJobStatus.SUBMITTED
    submitted_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    @property
    def item_id_list(self) -> list[str]:
        return json.loads(self.item_ids)
