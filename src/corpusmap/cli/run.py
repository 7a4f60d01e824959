"""corpusmap run / resume / reset — drive the pipeline for a session.

  corpusmap run <session>                       full run from triage
  corpusmap resume <session> --stage embed      re-enter at a stage
  corpusmap resume <session> --stage embed --force
                                                take over after a killed process
  corpusmap reset <session>                     back to NotStarted
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from corpusmap.batch.litellm_batch import validate_api_key
from corpusmap.cli.common import (
    DEFAULT_DB,
    DbOption,
    VerboseOption,
    console,
    load_cfg,
    open_db,
)
from corpusmap.cli.errors import (
    err_already_running,
    err_invalid_transition,
    err_no_api_key,
    err_session_not_found,
    warn_unresolved_batches,
)
from corpusmap.config import CorpusmapConfig
from corpusmap.db.models import PipelineStatus, Session
from corpusmap.db.repository import Repository
from corpusmap.log import configure_logging
from corpusmap.pipeline.errors import (
    InvalidTransitionError,
    PipelineAlreadyRunningError,
    SessionNotFoundError,
)
from corpusmap.pipeline.orchestrator import Pipeline
from corpusmap.pipeline.status import STAGE_ORDER, Stage

SessionArg = Annotated[str, typer.Argument(help="Session id.")]


def _build_pipeline(repo: Repository, cfg: CorpusmapConfig) -> Pipeline:
    return Pipeline(repo, cfg)


def _check_api_keys(cfg: CorpusmapConfig) -> None:
    for model in (cfg.triage.model, cfg.embedding.model, cfg.naming.model):
        try:
            validate_api_key(model)
        except EnvironmentError as exc:
            console.print(err_no_api_key(model))
            raise typer.Exit(1) from exc


def _report(repo: Repository, session: Session) -> None:
    status = session.pipeline_status
    if status is PipelineStatus.FAILED:
        console.print(f"[red]✗[/] Session [bold]{session.id}[/] failed: {session.pipeline_error}")
        console.print(f"  Resume:  corpusmap resume {session.id} --stage <stage>")
        raise typer.Exit(1)

    console.print(f"[green]✓[/] Session [bold]{session.id}[/] is {status.value}")
    unresolved: list[str] = []
    for stats in repo.get_session_stats(session.id).values():
        unresolved.extend(getattr(stats, "unresolved_batches", []))
    if unresolved:
        console.print(warn_unresolved_batches(sorted(unresolved)))


def _drive(session_id: str, db: Path, stage: Stage, *, force: bool) -> None:
    cfg = load_cfg()
    _check_api_keys(cfg)

    conn = open_db(db)
    try:
        repo = Repository(conn)
        pipeline = _build_pipeline(repo, cfg)
        try:
            session = asyncio.run(pipeline.run_from_stage(session_id, stage, force=force))
        except SessionNotFoundError as exc:
            console.print(err_session_not_found(session_id))
            raise typer.Exit(1) from exc
        except PipelineAlreadyRunningError as exc:
            console.print(err_already_running(session_id, exc.status))
            raise typer.Exit(1) from exc
        except InvalidTransitionError as exc:
            console.print(err_invalid_transition(str(exc), session_id))
            raise typer.Exit(1) from exc
        _report(repo, session)
    finally:
        conn.close()


def run_cmd(
    session_id: SessionArg,
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Run the full pipeline: triage → dedup → embed → reduce → cluster → name."""
    configure_logging(verbose, console)
    _drive(session_id, db, Stage.TRIAGE, force=False)


def resume_cmd(
    session_id: SessionArg,
    stage: Annotated[
        Stage,
        typer.Option(
            "--stage",
            help="Stage to re-enter: " + ", ".join(s.value for s in STAGE_ORDER) + ".",
            case_sensitive=False,
        ),
    ] = Stage.TRIAGE,
    force: Annotated[
        bool,
        typer.Option("--force", help="Abandon an in-progress status left by a killed process."),
    ] = False,
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Resume a Failed or NotStarted session from a given stage."""
    configure_logging(verbose, console)
    _drive(session_id, db, stage, force=force)


def reset_cmd(
    session_id: SessionArg,
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Return a finished or failed session to NotStarted (document progress is kept)."""
    configure_logging(verbose, console)
    cfg = load_cfg()
    conn = open_db(db)
    try:
        pipeline = _build_pipeline(Repository(conn), cfg)
        try:
            session = pipeline.reset(session_id)
        except SessionNotFoundError as exc:
            console.print(err_session_not_found(session_id))
            raise typer.Exit(1) from exc
        except InvalidTransitionError as exc:
            console.print(err_invalid_transition(str(exc), session_id))
            raise typer.Exit(1) from exc
    finally:
        conn.close()
    console.print(f"[green]✓[/] Session [bold]{session.id}[/] reset to {session.pipeline_status.value}")
