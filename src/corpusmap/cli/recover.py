"""corpusmap recover — merge results of batches by handle.

Needs no state from the run that submitted them: the ledger tells which
stage (and which documents) a handle belongs to. Only still-unprocessed
items are written, so recovering a handle twice is harmless.
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional

import typer
from rich.table import Table

from corpusmap.batch.base import BatchService
from corpusmap.batch.litellm_batch import LiteLLMBatchService
from corpusmap.cli.common import DEFAULT_DB, DbOption, VerboseOption, console, load_cfg, open_db
from corpusmap.cli.errors import err_session_not_found
from corpusmap.config import CorpusmapConfig
from corpusmap.db.repository import Repository
from corpusmap.log import configure_logging
from corpusmap.pipeline.recovery import RecoveryReport, pending_handles, recover_batch
from corpusmap.stages import naming, triage

_STATUS_STYLE = {"recovered": "green", "pending": "yellow", "errored": "red"}


def _service_for(cfg: CorpusmapConfig, stage: str) -> BatchService:
    if stage == naming.STAGE:
        return LiteLLMBatchService(cfg.naming.model)
    return LiteLLMBatchService(cfg.triage.model)


async def _recover_all(
    repo: Repository, cfg: CorpusmapConfig, handles: list[str], stage: str
) -> list[RecoveryReport]:
    reports = []
    for handle in handles:
        job = repo.get_batch_job(handle)
        service = _service_for(cfg, job.stage if job is not None else stage)
        reports.append(await recover_batch(repo, service, handle, stage=stage))
    return reports


def recover_cmd(
    handles: Annotated[
        Optional[list[str]],
        typer.Argument(help="Batch handles to recover."),
    ] = None,
    session_id: Annotated[
        Optional[str],
        typer.Option("--session", help="Session whose ledger to read (with --pending)."),
    ] = None,
    pending: Annotated[
        bool,
        typer.Option("--pending", help="Recover every unmerged handle on the session's ledger."),
    ] = False,
    stage: Annotated[
        str,
        typer.Option("--stage", help="Stage for handles missing from the ledger: triage or name."),
    ] = triage.STAGE,
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Re-fetch finished batch results and merge them into the database."""
    configure_logging(verbose, console)
    if stage not in (triage.STAGE, naming.STAGE):
        console.print(f"[red]Error:[/] --stage must be '{triage.STAGE}' or '{naming.STAGE}'.")
        raise typer.Exit(1)

    cfg = load_cfg()
    conn = open_db(db)
    try:
        repo = Repository(conn)
        targets = list(handles or [])
        if pending:
            if not session_id:
                console.print("[red]Error:[/] --pending requires --session <id>.")
                raise typer.Exit(1)
            if repo.get_session(session_id) is None:
                console.print(err_session_not_found(session_id))
                raise typer.Exit(1)
            targets.extend(h for h in pending_handles(repo, session_id) if h not in targets)
        if not targets:
            console.print("[yellow]Nothing to recover.[/] Pass handles or --session <id> --pending.")
            raise typer.Exit(0)

        reports = asyncio.run(_recover_all(repo, cfg, targets, stage))
    finally:
        conn.close()

    table = Table(title="Recovery")
    table.add_column("Handle")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Written", justify="right")
    table.add_column("Skipped", justify="right")
    for r in reports:
        style = _STATUS_STYLE.get(r.status, "white")
        table.add_row(
            r.handle,
            r.stage,
            f"[{style}]{r.status}[/]",
            str(r.written),
            str(r.skipped),
        )
    console.print(table)
    for r in reports:
        if r.error:
            console.print(f"  [red]{r.handle}:[/] {r.error}")
