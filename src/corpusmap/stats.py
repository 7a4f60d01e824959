"""Per-stage statistics stored on the session.

Each stage produces exactly one stats record, written in a single call to
``Repository.update_session_stats`` when the stage completes. Records are
tagged with their stage so they round-trip through the JSON column without
losing their shape.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Union


@dataclass
class TriageStats:
    stage: ClassVar[str] = "triage"

    counts: dict[str, int] = field(default_factory=dict)
    untriaged: int = 0
    submitted: int = 0
    batches: int = 0
    unresolved_batches: list[str] = field(default_factory=list)

    @property
    def total_triaged(self) -> int:
        return sum(self.counts.values())


@dataclass
class DedupStats:
    stage: ClassVar[str] = "dedup"

    total: int = 0
    duplicate_groups: int = 0
    duplicates: int = 0
    canonical: int = 0


@dataclass
class EmbeddingStats:
    stage: ClassVar[str] = "embed"

    total: int = 0
    embedded: int = 0
    errored: int = 0
    skipped: int = 0


@dataclass
class ClusterStats:
    stage: ClassVar[str] = "cluster"

    total_points: int = 0
    input_dimensions: int = 0
    reduced_dimensions: int = 0
    cluster_count: int = 0
    noise_count: int = 0
    average_cluster_size: float = 0.0
    largest_cluster_size: int = 0


@dataclass
class NamingStats:
    stage: ClassVar[str] = "name"

    total: int = 0
    named: int = 0
    failed: int = 0
    unresolved_batches: list[str] = field(default_factory=list)


StageStats = Union[TriageStats, DedupStats, EmbeddingStats, ClusterStats, NamingStats]

_STATS_TYPES: dict[str, type] = {
    cls.stage: cls
    for cls in (TriageStats, DedupStats, EmbeddingStats, ClusterStats, NamingStats)
}


def stats_to_dict(stats: StageStats) -> dict[str, Any]:
    """Return a JSON-ready dict carrying the stage tag."""
    return {"stage": stats.stage, **asdict(stats)}


def stats_from_dict(data: dict[str, Any]) -> StageStats:
    """Rebuild a stats record from its tagged dict form.

    Unknown keys are ignored so older rows keep loading after a field is
    dropped.

    Raises:
        ValueError: If the stage tag is missing or unknown.
    """
    tag = data.get("stage")
    cls = _STATS_TYPES.get(tag)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown stats stage tag: {tag!r}")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})
