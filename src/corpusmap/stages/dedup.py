"""Dedup stage: group FirmDrafted documents by normalized-content hash.

Normalization removes differences that should not affect identity
(Unicode compatibility forms, typographic quotes, runs of whitespace).
Letter case is kept. Within each group exactly one document is canonical,
chosen by a fixed order:

  1. most complete metadata (subject, sender, date, file name, folder)
  2. earliest creation time
  3. lowest document id

Non-canonical members keep their triage fields; nothing is deleted. The
whole assignment is recomputed on every run inside one transaction, so the
result only depends on the current set of FirmDrafted documents.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from collections import defaultdict

from corpusmap.db.models import Document
from corpusmap.db.repository import Repository
from corpusmap.stats import DedupStats

logger = logging.getLogger(__name__)

STAGE = "dedup"

_METADATA_FIELDS = ("email_subject", "email_sender", "email_date", "file_name", "folder_path")


def normalize_content(text: str | None) -> str:
    text = unicodedata.normalize("NFKC", text or "")
    text = re.sub(r"[“”„]", '"', text)
    text = re.sub(r"[‘’‚]", "'", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def content_hash(text: str | None) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def metadata_completeness(doc: Document) -> int:
    return sum(1 for name in _METADATA_FIELDS if (getattr(doc, name) or "").strip())


def canonical_sort_key(doc: Document) -> tuple[int, str, str]:
    return (-metadata_completeness(doc), doc.created_at or "", doc.id)


def pick_canonical(members: list[Document]) -> Document:
    return min(members, key=canonical_sort_key)


def group_by_hash(docs: list[Document]) -> dict[str, list[Document]]:
    groups: dict[str, list[Document]] = defaultdict(list)
    for doc in docs:
        groups[content_hash(doc.text)].append(doc)
    return dict(groups)


class DedupStage:
    name = STAGE

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def run(self, session_id: str) -> DedupStats:
        docs = self._repo.find_firm_drafted(session_id)
        groups = group_by_hash(docs)

        stats = DedupStats(total=len(docs), canonical=len(groups))
        with self._repo.transaction():
            for digest, members in groups.items():
                canonical = pick_canonical(members)
                is_group = len(members) > 1
                if is_group:
                    stats.duplicate_groups += 1
                    stats.duplicates += len(members) - 1
                self._repo.mark_duplicate_group(
                    digest,
                    digest if is_group else None,
                    canonical.id,
                    [m.id for m in members],
                )

        logger.info(
            "dedup.done session=%s total=%d groups=%d duplicates=%d canonical=%d",
            session_id,
            stats.total,
            stats.duplicate_groups,
            stats.duplicates,
            stats.canonical,
        )
        return stats
