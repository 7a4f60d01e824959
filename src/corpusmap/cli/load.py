"""corpusmap load — import extracted documents for a session.

Input is JSON Lines, one document per line::

    {"id": "doc-001", "text": "...", "file_name": "contract.docx",
     "folder_path": "Inbox/2019", "email_subject": "...",
     "email_sender": "...", "email_date": "2019-03-01"}

Only ``id`` and ``text`` are required. Re-loading the same file is a no-op:
document ids that already exist are skipped.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer

from corpusmap.batch.base import ENTITY_ID_RE
from corpusmap.cli.common import DEFAULT_DB, DbOption, VerboseOption, console, open_db
from corpusmap.cli.errors import err_bad_jsonl
from corpusmap.db.models import Document
from corpusmap.db.repository import Repository
from corpusmap.log import configure_logging

# "document:" prefix + id must fit the 64-character batch custom id limit.
MAX_DOCUMENT_ID_CHARS = 55

_OPTIONAL_FIELDS = ("file_name", "folder_path", "email_subject", "email_sender", "email_date")


class RecordError(ValueError):
    """One JSONL line cannot be turned into a document."""


def parse_record(session_id: str, raw: Any) -> Document:
    if not isinstance(raw, dict):
        raise RecordError("expected a JSON object")
    doc_id = raw.get("id")
    if not isinstance(doc_id, str) or not doc_id:
        raise RecordError("missing 'id'")
    if len(doc_id) > MAX_DOCUMENT_ID_CHARS or not ENTITY_ID_RE.match(doc_id):
        raise RecordError(f"invalid id {doc_id!r}")
    text = raw.get("text")
    if text is not None and not isinstance(text, str):
        raise RecordError("'text' must be a string")

    fields = {name: raw.get(name) for name in _OPTIONAL_FIELDS}
    return Document(
        id=doc_id,
        session_id=session_id,
        text=text or "",
        file_name=fields["file_name"] or "",
        folder_path=fields["folder_path"] or "",
        email_subject=fields["email_subject"],
        email_sender=fields["email_sender"],
        email_date=fields["email_date"],
    )


def load_documents(repo: Repository, session_id: str, path: Path) -> tuple[int, int]:
    """Insert documents from *path*. Returns ``(added, skipped)``.

    Raises:
        RecordError: With ``line_no`` set, on the first malformed line.
    """
    docs: list[Document] = []
    with path.open(encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            if not line.strip():
                continue
            try:
                docs.append(parse_record(session_id, json.loads(line)))
            except json.JSONDecodeError as exc:
                err = RecordError(f"invalid JSON ({exc.msg})")
                err.line_no = line_no  # type: ignore[attr-defined]
                raise err from exc
            except RecordError as exc:
                exc.line_no = line_no  # type: ignore[attr-defined]
                raise

    added = skipped = 0
    with repo.transaction():
        if repo.get_session(session_id) is None:
            repo.create_session(session_id)
        for doc in docs:
            if repo.get_document(doc.id) is not None:
                skipped += 1
                continue
            repo.add_document(doc)
            added += 1
        repo.refresh_total_documents(session_id)
    return added, skipped


def load_cmd(
    session_id: Annotated[str, typer.Argument(help="Session to load documents into.")],
    jsonl: Annotated[
        Path,
        typer.Option("--jsonl", help="JSON Lines file with one document per line."),
    ],
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Create the session (if needed) and import its documents."""
    configure_logging(verbose)
    if not jsonl.exists():
        console.print(f"[red]Error:[/] File not found: '{jsonl}'")
        raise typer.Exit(1)

    conn = open_db(db)
    try:
        repo = Repository(conn)
        try:
            added, skipped = load_documents(repo, session_id, jsonl)
        except RecordError as exc:
            console.print(err_bad_jsonl(str(jsonl), getattr(exc, "line_no", 0), str(exc)))
            raise typer.Exit(1) from exc
        session = repo.get_session(session_id)
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] Session [bold]{session_id}[/]: {added} added, {skipped} already present "
        f"({session.total_documents if session else added} total)"
    )
