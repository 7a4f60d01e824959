"""Manual reassignment of a document into a named cluster.

Noise documents are never moved automatically. An operator may move one
eligible document (canonical, FirmDrafted, embedded) into a non-noise
cluster of the same session once the pipeline has finished. The session is
``ReClustering`` while the move is applied and ``ReadyForValidation`` after.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from corpusmap.db.models import Document, PipelineStatus, TriageStatus
from corpusmap.db.repository import Repository
from corpusmap.pipeline.errors import ReassignmentError, SessionNotFoundError
from corpusmap.pipeline.status import check_transition

logger = logging.getLogger(__name__)


def reassign_document(repo: Repository, doc_id: str, cluster_id: str) -> Document:
    """Move *doc_id* into *cluster_id* and return the updated document.

    Raises:
        ReassignmentError: Unknown document or cluster, ineligible document,
            noise or foreign target cluster.
        InvalidTransitionError: The session has not finished.
    """
    doc = repo.get_document(doc_id)
    if doc is None:
        raise ReassignmentError(f"Document not found: {doc_id}")
    if not (
        doc.is_canonical
        and doc.triage_status is TriageStatus.FIRM_DRAFTED
        and doc.is_embedded
    ):
        raise ReassignmentError(
            f"Document {doc_id} is not clusterable (must be canonical, FirmDrafted and embedded)"
        )

    target = repo.get_cluster(cluster_id)
    if target is None:
        raise ReassignmentError(f"Cluster not found: {cluster_id}")
    if target.session_id != doc.session_id:
        raise ReassignmentError(f"Cluster {cluster_id} belongs to another session")
    if target.is_noise:
        raise ReassignmentError("Documents cannot be moved into the noise cluster")

    session = repo.get_session(doc.session_id)
    if session is None:
        raise SessionNotFoundError(doc.session_id)
    check_transition(session.pipeline_status, PipelineStatus.RECLUSTERING)

    if doc.cluster_id == cluster_id:
        return doc

    previous = doc.cluster_id
    repo.update_session_status(doc.session_id, PipelineStatus.RECLUSTERING)
    try:
        with repo.transaction():
            repo.assign_cluster(doc_id, cluster_id, 1.0)
            repo.refresh_member_count(cluster_id)
            if previous is not None:
                repo.refresh_member_count(previous)
    finally:
        repo.update_session_status(doc.session_id, PipelineStatus.READY_FOR_VALIDATION)

    logger.info(
        "reassign doc=%s from=%s to=%s session=%s",
        doc_id,
        previous,
        cluster_id,
        doc.session_id,
    )
    return replace(doc, cluster_id=cluster_id, cluster_confidence=1.0)
