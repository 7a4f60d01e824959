"""Pipeline stages, in execution order."""

from corpusmap.stages.clustering import ClusteringStage
from corpusmap.stages.dedup import DedupStage
from corpusmap.stages.embedding import EmbeddingStage
from corpusmap.stages.naming import NamingStage
from corpusmap.stages.reduction import ReducedVectors, ReductionStage
from corpusmap.stages.triage import TriageStage

__all__ = [
    "ClusteringStage",
    "DedupStage",
    "EmbeddingStage",
    "NamingStage",
    "ReducedVectors",
    "ReductionStage",
    "TriageStage",
]
