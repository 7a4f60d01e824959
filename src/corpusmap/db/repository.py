"""Repository pattern for all pipeline database operations.

Single interface for: sessions, stage statistics, documents, clusters,
vec embeddings and the batch-job ledger. Every method is a self-contained
write (committed on return) unless it runs inside ``transaction()``, in
which case the outermost block commits or rolls back as a unit.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from corpusmap.db.models import (
    TERMINAL_STATUSES,
    BatchJob,
    BatchJobStatus,
    Cluster,
    Document,
    PipelineStatus,
    Session,
    TriageStatus,
)
from corpusmap.stats import StageStats, stats_from_dict, stats_to_dict

_SESSION_COLUMNS = """
    id, total_documents, pipeline_status, pipeline_started_at, stage_started_at,
    pipeline_completed_at, pipeline_error, pipeline_progress, created_at
"""

_DOC_COLUMNS = """
    seq, id, session_id, text, file_name, folder_path, email_subject, email_sender,
    email_date, content_hash, triage_status, triage_confidence, triage_reason,
    duplicate_group_id, is_canonical, embedded_at, embedding_error, cluster_id,
    cluster_confidence, created_at
"""

_CLUSTER_COLUMNS = """
    id, session_id, member_count, is_noise, name, description, status, created_at
"""

_JOB_COLUMNS = """
    handle, session_id, stage, item_ids, status, submitted_at, completed_at, error
"""

_FIRM = TriageStatus.FIRM_DRAFTED.value


class Repository:
    """Data access layer for all pipeline entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see corpusmap.db.schema.initialize).
        """
        self._conn = conn
        self._depth = 0

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Group several writes into one commit. Nested blocks join the outer one."""
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            self._conn.commit()

    def _commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session_id: str) -> Session:
        """Insert a new session in ``NotStarted`` and return it."""
        self._conn.execute("INSERT INTO sessions (id) VALUES (?)", (session_id,))
        self._commit()
        row = self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row)

    def get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def refresh_total_documents(self, session_id: str) -> int:
        """Recount the session's documents and store the total."""
        total = self._conn.execute(
            "SELECT COUNT(*) FROM documents WHERE session_id = ?", (session_id,)
        ).fetchone()[0]
        self._conn.execute(
            "UPDATE sessions SET total_documents = ? WHERE id = ?", (total, session_id)
        )
        self._commit()
        return total

    def start_pipeline(self, session_id: str) -> None:
        """Stamp the start of a (re)run and clear the previous completion time."""
        self._conn.execute(
            """
            UPDATE sessions
            SET pipeline_started_at = datetime('now'),
                pipeline_completed_at = NULL,
                pipeline_error = NULL
            WHERE id = ?
            """,
            (session_id,),
        )
        self._commit()

    def update_session_status(
        self, session_id: str, status: PipelineStatus, error: str | None = None
    ) -> None:
        """Persist a status transition.

        In-progress statuses stamp ``stage_started_at``; terminal statuses
        stamp ``pipeline_completed_at``. ``error`` replaces the stored error
        (``None`` clears it).
        """
        if status in TERMINAL_STATUSES:
            stamp_column = "pipeline_completed_at"
        else:
            stamp_column = "stage_started_at"
        self._conn.execute(
            f"""
            UPDATE sessions
            SET pipeline_status = ?, pipeline_error = ?, {stamp_column} = datetime('now')
            WHERE id = ?
            """,
            (status.value, error, session_id),
        )
        self._commit()

    def reset_session(self, session_id: str) -> None:
        """Return a session to ``NotStarted``; documents are left untouched."""
        self._conn.execute(
            """
            UPDATE sessions
            SET pipeline_status = ?,
                pipeline_started_at = NULL,
                stage_started_at = NULL,
                pipeline_completed_at = NULL,
                pipeline_error = NULL,
                pipeline_progress = '{}'
            WHERE id = ?
            """,
            (PipelineStatus.NOT_STARTED.value, session_id),
        )
        self._commit()

    def update_session_progress(
        self, session_id: str, stage: str, current: int, total: int, message: str
    ) -> None:
        progress = {
            "stage": stage,
            "current": current,
            "total": total,
            "message": message,
        }
        self._conn.execute(
            """
            UPDATE sessions
            SET pipeline_progress = json_set(?, '$.updated_at', datetime('now'))
            WHERE id = ?
            """,
            (json.dumps(progress), session_id),
        )
        self._commit()

    def update_session_stats(self, session_id: str, stats: StageStats) -> None:
        """Upsert the statistics record for one stage in a single write."""
        self._conn.execute(
            """
            INSERT INTO session_stats (session_id, stage, stats)
            VALUES (?, ?, ?)
            ON CONFLICT(session_id, stage) DO UPDATE SET
                stats = excluded.stats,
                updated_at = datetime('now')
            """,
            (session_id, stats.stage, json.dumps(stats_to_dict(stats))),
        )
        self._commit()

    def get_session_stats(self, session_id: str) -> dict[str, StageStats]:
        """Return ``{stage: stats}`` for every stage that has completed."""
        rows = self._conn.execute(
            "SELECT stage, stats FROM session_stats WHERE session_id = ? ORDER BY updated_at",
            (session_id,),
        ).fetchall()
        return {r["stage"]: stats_from_dict(json.loads(r["stats"])) for r in rows}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, doc: Document) -> int:
        """Insert a document record. Returns its seq."""
        cur = self._conn.execute(
            """
            INSERT INTO documents (
                id, session_id, text, file_name, folder_path,
                email_subject, email_sender, email_date
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc.id,
                doc.session_id,
                doc.text,
                doc.file_name,
                doc.folder_path,
                doc.email_subject,
                doc.email_sender,
                doc.email_date,
            ),
        )
        self._commit()
        return cur.lastrowid

    def get_document(self, doc_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE id = ?", (doc_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_documents(self, doc_ids: Iterable[str]) -> list[Document]:
        """Return the documents for *doc_ids* that exist, in seq order."""
        ids = list(doc_ids)
        docs: list[Document] = []
        for start in range(0, len(ids), 500):
            part = ids[start : start + 500]
            placeholders = ",".join("?" * len(part))
            rows = self._conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents WHERE id IN ({placeholders})",
                part,
            ).fetchall()
            docs.extend(_row_to_document(r) for r in rows)
        docs.sort(key=lambda d: d.seq or 0)
        return docs

    def list_documents(self, session_id: str) -> list[Document]:
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE session_id = ? ORDER BY seq",
            (session_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def find_untriaged(self, session_id: str) -> list[Document]:
        """Return documents that have no triage status yet."""
        rows = self._conn.execute(
            f"""
            SELECT {_DOC_COLUMNS} FROM documents
            WHERE session_id = ? AND triage_status IS NULL
            ORDER BY seq
            """,
            (session_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def update_triage(
        self,
        doc_id: str,
        status: TriageStatus,
        confidence: float,
        reason: str,
        *,
        only_if_untriaged: bool = True,
    ) -> bool:
        """Store a triage outcome. Returns True if the row was written.

        With ``only_if_untriaged`` (the default) the write is a check-and-set:
        a document that already carries a triage status is left as it is.
        """
        sql = """
            UPDATE documents
            SET triage_status = ?, triage_confidence = ?, triage_reason = ?
            WHERE id = ?
        """
        if only_if_untriaged:
            sql += " AND triage_status IS NULL"
        cur = self._conn.execute(sql, (status.value, confidence, reason, doc_id))
        self._commit()
        return cur.rowcount > 0

    def count_triage_outcomes(self, session_id: str) -> dict[str, int]:
        """Return ``{status: count}`` for the session; untriaged rows are keyed ``None``."""
        rows = self._conn.execute(
            """
            SELECT triage_status, COUNT(*) AS n FROM documents
            WHERE session_id = ? GROUP BY triage_status
            """,
            (session_id,),
        ).fetchall()
        return {r["triage_status"]: r["n"] for r in rows}

    def find_firm_drafted(self, session_id: str) -> list[Document]:
        """Return every FirmDrafted document of the session (dedup input)."""
        rows = self._conn.execute(
            f"""
            SELECT {_DOC_COLUMNS} FROM documents
            WHERE session_id = ? AND triage_status = ?
            ORDER BY seq
            """,
            (session_id, _FIRM),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def mark_duplicate_group(
        self,
        content_hash: str,
        group_id: str | None,
        canonical_id: str,
        member_ids: Iterable[str],
    ) -> None:
        """Record one duplicate group: every member gets the hash and group id,
        exactly *canonical_id* is flagged canonical."""
        rows = [
            (content_hash, group_id, 1 if member_id == canonical_id else 0, member_id)
            for member_id in member_ids
        ]
        self._conn.executemany(
            """
            UPDATE documents
            SET content_hash = ?, duplicate_group_id = ?, is_canonical = ?
            WHERE id = ?
            """,
            rows,
        )
        self._commit()

    def find_canonical_firm_drafted(
        self,
        session_id: str,
        *,
        unembedded_only: bool = False,
        include_errored: bool = True,
    ) -> list[Document]:
        """Return canonical FirmDrafted documents.

        Args:
            session_id: Session to read.
            unembedded_only: Only documents without an embedding.
            include_errored: Include documents whose embedding previously failed.
        """
        sql = f"""
            SELECT {_DOC_COLUMNS} FROM documents
            WHERE session_id = ? AND triage_status = ? AND is_canonical = 1
        """
        if unembedded_only:
            sql += " AND embedded_at IS NULL"
        if not include_errored:
            sql += " AND embedding_error IS NULL"
        rows = self._conn.execute(sql + " ORDER BY seq", (session_id, _FIRM)).fetchall()
        return [_row_to_document(r) for r in rows]

    def find_clusterable(self, session_id: str) -> list[Document]:
        """Canonical, FirmDrafted, successfully embedded documents."""
        rows = self._conn.execute(
            f"""
            SELECT {_DOC_COLUMNS} FROM documents
            WHERE session_id = ? AND triage_status = ? AND is_canonical = 1
              AND embedded_at IS NOT NULL
            ORDER BY seq
            """,
            (session_id, _FIRM),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def count_unclustered(self, session_id: str) -> int:
        """Number of clusterable documents that have no cluster yet."""
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM documents
            WHERE session_id = ? AND triage_status = ? AND is_canonical = 1
              AND embedded_at IS NOT NULL AND cluster_id IS NULL
            """,
            (session_id, _FIRM),
        ).fetchone()[0]

    def count_stale_assignments(self, session_id: str) -> int:
        """Number of documents holding a cluster id that are no longer clusterable.

        Happens when a rerun of dedup hands the canonical flag to another
        group member after clustering.
        """
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM documents
            WHERE session_id = ? AND cluster_id IS NOT NULL
              AND NOT (triage_status IS ? AND is_canonical IS 1
                       AND embedded_at IS NOT NULL)
            """,
            (session_id, _FIRM),
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def update_embedding(self, table: str, doc_id: str, embedding: list[float]) -> None:
        """Store *embedding* for *doc_id* and mark the document embedded."""
        row = self._conn.execute(
            "SELECT seq FROM documents WHERE id = ?", (doc_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"Unknown document: {doc_id}")
        seq = row["seq"]
        with self.transaction():
            self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (seq,))
            self._conn.execute(
                f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
                (seq, json.dumps(embedding)),
            )
            self._conn.execute(
                """
                UPDATE documents
                SET embedded_at = datetime('now'), embedding_error = NULL
                WHERE seq = ?
                """,
                (seq,),
            )

    def mark_embedding_error(self, doc_id: str, error: str) -> None:
        self._conn.execute(
            "UPDATE documents SET embedding_error = ? WHERE id = ? AND embedded_at IS NULL",
            (error[:500], doc_id),
        )
        self._commit()

    def get_embeddings(self, session_id: str, table: str) -> list[tuple[str, list[float]]]:
        """Return ``[(doc_id, vector), ...]`` for the session's clusterable documents.

        Ordered by document seq so repeated reads line up row for row.
        """
        wanted = {
            r["seq"]: r["id"]
            for r in self._conn.execute(
                """
                SELECT seq, id FROM documents
                WHERE session_id = ? AND triage_status = ? AND is_canonical = 1
                  AND embedded_at IS NOT NULL
                """,
                (session_id, _FIRM),
            ).fetchall()
        }
        if not wanted:
            return []

        found: list[tuple[int, list[float]]] = []
        for vec_row in self._conn.execute(
            f"SELECT rowid, vec_to_json(embedding) AS embedding FROM {table}"
        ):
            if vec_row["rowid"] in wanted:
                found.append((vec_row["rowid"], json.loads(vec_row["embedding"])))
        found.sort(key=lambda pair: pair[0])
        return [(wanted[seq], vector) for seq, vector in found]

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def create_cluster(
        self,
        session_id: str,
        member_ids: list[str],
        is_noise: bool = False,
        confidences: dict[str, float] | None = None,
    ) -> Cluster:
        """Insert a cluster and assign *member_ids* to it."""
        cluster_id = str(uuid.uuid4())
        confidences = confidences or {}
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO clusters (id, session_id, member_count, is_noise, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    cluster_id,
                    session_id,
                    len(member_ids),
                    1 if is_noise else 0,
                    "Noise" if is_noise else "Pending",
                ),
            )
            self._conn.executemany(
                "UPDATE documents SET cluster_id = ?, cluster_confidence = ? WHERE id = ?",
                [(cluster_id, confidences.get(m), m) for m in member_ids],
            )
        row = self._conn.execute(
            f"SELECT {_CLUSTER_COLUMNS} FROM clusters WHERE id = ?", (cluster_id,)
        ).fetchone()
        return _row_to_cluster(row)

    def assign_cluster(
        self, doc_id: str, cluster_id: str | None, confidence: float | None = None
    ) -> None:
        self._conn.execute(
            "UPDATE documents SET cluster_id = ?, cluster_confidence = ? WHERE id = ?",
            (cluster_id, confidence, doc_id),
        )
        self._commit()

    def refresh_member_count(self, cluster_id: str) -> int:
        count = self._conn.execute(
            "SELECT COUNT(*) FROM documents WHERE cluster_id = ?", (cluster_id,)
        ).fetchone()[0]
        self._conn.execute(
            "UPDATE clusters SET member_count = ? WHERE id = ?", (count, cluster_id)
        )
        self._commit()
        return count

    def clear_clusters(self, session_id: str) -> int:
        """Unassign every document and delete the session's clusters.

        Returns the number of clusters deleted.
        """
        with self.transaction():
            self._conn.execute(
                """
                UPDATE documents SET cluster_id = NULL, cluster_confidence = NULL
                WHERE session_id = ?
                """,
                (session_id,),
            )
            cur = self._conn.execute(
                "DELETE FROM clusters WHERE session_id = ?", (session_id,)
            )
        return cur.rowcount

    def get_cluster(self, cluster_id: str) -> Cluster | None:
        row = self._conn.execute(
            f"SELECT {_CLUSTER_COLUMNS} FROM clusters WHERE id = ?", (cluster_id,)
        ).fetchone()
        return _row_to_cluster(row) if row else None

    def list_clusters(self, session_id: str) -> list[Cluster]:
        """Return the session's clusters, largest first (noise last)."""
        rows = self._conn.execute(
            f"""
            SELECT {_CLUSTER_COLUMNS} FROM clusters
            WHERE session_id = ?
            ORDER BY is_noise, member_count DESC, id
            """,
            (session_id,),
        ).fetchall()
        return [_row_to_cluster(r) for r in rows]

    def find_unnamed_clusters(self, session_id: str) -> list[Cluster]:
        rows = self._conn.execute(
            f"""
            SELECT {_CLUSTER_COLUMNS} FROM clusters
            WHERE session_id = ? AND is_noise = 0 AND name IS NULL
            ORDER BY member_count DESC, id
            """,
            (session_id,),
        ).fetchall()
        return [_row_to_cluster(r) for r in rows]

    def list_cluster_members(self, cluster_id: str) -> list[Document]:
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE cluster_id = ? ORDER BY seq",
            (cluster_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def update_cluster_name(
        self, cluster_id: str, name: str, description: str | None = None
    ) -> None:
        self._conn.execute(
            "UPDATE clusters SET name = ?, description = ? WHERE id = ?",
            (name, description, cluster_id),
        )
        self._commit()

    # ------------------------------------------------------------------
    # Batch-job ledger
    # ------------------------------------------------------------------

    def record_batch_job(
        self, handle: str, session_id: str, stage: str, item_ids: list[str]
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO batch_jobs (handle, session_id, stage, item_ids)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(handle) DO NOTHING
            """,
            (handle, session_id, stage, json.dumps(item_ids)),
        )
        self._commit()

    def update_batch_job(
        self, handle: str, status: BatchJobStatus, error: str | None = None
    ) -> None:
        done = status in (BatchJobStatus.COMPLETED, BatchJobStatus.RECOVERED)
        self._conn.execute(
            """
            UPDATE batch_jobs
            SET status = ?, error = ?,
                completed_at = CASE WHEN ? THEN datetime('now') ELSE completed_at END
            WHERE handle = ?
            """,
            (status.value, error, 1 if done else 0, handle),
        )
        self._commit()

    def get_batch_job(self, handle: str) -> BatchJob | None:
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM batch_jobs WHERE handle = ?", (handle,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_open_batch_jobs(
        self, session_id: str, stage: str | None = None
    ) -> list[BatchJob]:
        """Jobs that were submitted but whose results were never merged."""
        sql = f"""
            SELECT {_JOB_COLUMNS} FROM batch_jobs
            WHERE session_id = ? AND status IN (?, ?)
        """
        params: list[str] = [
            session_id,
            BatchJobStatus.SUBMITTED.value,
            BatchJobStatus.INCOMPLETE.value,
        ]
        if stage is not None:
            sql += " AND stage = ?"
            params.append(stage)
        rows = self._conn.execute(sql + " ORDER BY submitted_at, handle", params).fetchall()
        return [_row_to_job(r) for r in rows]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        total_documents=row["total_documents"],
        pipeline_status=PipelineStatus(row["pipeline_status"]),
        pipeline_started_at=row["pipeline_started_at"],
        stage_started_at=row["stage_started_at"],
        pipeline_completed_at=row["pipeline_completed_at"],
        pipeline_error=row["pipeline_error"],
        progress=row["pipeline_progress"],
        created_at=row["created_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    triage = row["triage_status"]
    canonical = row["is_canonical"]
    return Document(
        seq=row["seq"],
        id=row["id"],
        session_id=row["session_id"],
        text=row["text"],
        file_name=row["file_name"],
        folder_path=row["folder_path"],
        email_subject=row["email_subject"],
        email_sender=row["email_sender"],
        email_date=row["email_date"],
        content_hash=row["content_hash"],
        triage_status=TriageStatus(triage) if triage is not None else None,
        triage_confidence=row["triage_confidence"],
        triage_reason=row["triage_reason"],
        duplicate_group_id=row["duplicate_group_id"],
        is_canonical=bool(canonical) if canonical is not None else None,
        embedded_at=row["embedded_at"],
        embedding_error=row["embedding_error"],
        cluster_id=row["cluster_id"],
        cluster_confidence=row["cluster_confidence"],
        created_at=row["created_at"],
    )


def _row_to_cluster(row: sqlite3.Row) -> Cluster:
    return Cluster(
        id=row["id"],
        session_id=row["session_id"],
        member_count=row["member_count"],
        is_noise=bool(row["is_noise"]),
        name=row["name"],
        description=row["description"],
        status=row["status"],
        created_at=row["created_at"],
    )


def _row_to_job(row: sqlite3.Row) -> BatchJob:
    return BatchJob(
        handle=row["handle"],
        session_id=row["session_id"],
        stage=row["stage"],
        item_ids=row["item_ids"],
        status=BatchJobStatus(row["status"]),
        submitted_at=row["submitted_at"],
        completed_at=row["completed_at"],
        error=row["error"],
    )
