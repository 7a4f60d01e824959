"""corpusmap assign — move one document into a named cluster."""

from __future__ import annotations

from typing import Annotated

import typer

from corpusmap.cli.common import DEFAULT_DB, DbOption, VerboseOption, console, open_db
from corpusmap.cli.errors import err_invalid_transition, err_reassign
from corpusmap.db.repository import Repository
from corpusmap.log import configure_logging
from corpusmap.pipeline.errors import InvalidTransitionError, ReassignmentError
from corpusmap.pipeline.reassign import reassign_document


def assign_cmd(
    document_id: Annotated[str, typer.Argument(help="Document to move.")],
    cluster_id: Annotated[str, typer.Option("--cluster", help="Target cluster id.")],
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Reassign a document (e.g. out of noise) to an existing cluster."""
    configure_logging(verbose, console)
    conn = open_db(db)
    try:
        repo = Repository(conn)
        try:
            doc = reassign_document(repo, document_id, cluster_id)
        except ReassignmentError as exc:
            console.print(err_reassign(str(exc)))
            raise typer.Exit(1) from exc
        except InvalidTransitionError as exc:
            doc_row = repo.get_document(document_id)
            console.print(err_invalid_transition(str(exc), doc_row.session_id if doc_row else "<session>"))
            raise typer.Exit(1) from exc
        cluster = repo.get_cluster(cluster_id)
    finally:
        conn.close()

    label = cluster.display_name if cluster else cluster_id
    console.print(f"[green]✓[/] {doc.id} → [bold]{label}[/] ({cluster_id})")
