"""corpusmap status — session overview.

Shows the pipeline status and timestamps, live progress of the current
stage, the statistics recorded by each finished stage, and the clusters
with their names and sizes.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from corpusmap.cli.common import DEFAULT_DB, DbOption, console, open_db
from corpusmap.cli.errors import err_session_not_found
from corpusmap.db.models import Cluster, PipelineStatus, Session
from corpusmap.db.repository import Repository
from corpusmap.stats import StageStats, stats_to_dict

_STATUS_STYLE = {
    PipelineStatus.FAILED: "red",
    PipelineStatus.READY_FOR_VALIDATION: "green",
    PipelineStatus.COMPLETED: "green",
    PipelineStatus.NOT_STARTED: "dim",
}


def status_cmd(
    session_id: Annotated[str, typer.Argument(help="Session id.")],
    db: DbOption = DEFAULT_DB,
) -> None:
    """Show pipeline status, stage statistics and clusters for a session."""
    conn = open_db(db)
    try:
        repo = Repository(conn)
        session = repo.get_session(session_id)
        if session is None:
            console.print(err_session_not_found(session_id))
            raise typer.Exit(1)
        stats = repo.get_session_stats(session_id)
        clusters = repo.list_clusters(session_id)
    finally:
        conn.close()

    # ---- Panel 1: Session ----
    _show_session_panel(session)

    # ---- Panel 2: Stage statistics ----
    if stats:
        _show_stats_panel(stats)

    # ---- Panel 3: Clusters ----
    if clusters:
        _show_clusters_panel(clusters)


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_session_panel(session: Session) -> None:
    style = _STATUS_STYLE.get(session.pipeline_status, "yellow")
    lines = [
        f"Session:    [bold]{session.id}[/]",
        f"Status:     [{style}]{session.pipeline_status.value}[/]",
        f"Documents:  {session.total_documents}",
    ]
    if session.pipeline_started_at:
        lines.append(f"Started:    [dim]{session.pipeline_started_at}[/]")
    if session.stage_started_at and session.pipeline_completed_at is None:
        lines.append(f"Stage at:   [dim]{session.stage_started_at}[/]")
    if session.pipeline_completed_at:
        lines.append(f"Finished:   [dim]{session.pipeline_completed_at}[/]")
    if session.pipeline_error:
        lines.append(f"Error:      [red]{session.pipeline_error}[/]")

    progress = session.progress_dict
    if progress:
        lines.append(
            f"Progress:   {progress.get('stage', '?')} "
            f"{progress.get('current', 0)}/{progress.get('total', 0)}"
            + (f"  [dim]{progress['message']}[/]" if progress.get("message") else "")
        )

    console.print(Panel("\n".join(lines), title="[bold]Pipeline[/]", expand=False))


def _format_value(value: object) -> str:
    if isinstance(value, dict):
        return ", ".join(f"{k}={v}" for k, v in sorted(value.items())) or "-"
    if isinstance(value, list):
        return " ".join(str(v) for v in value) or "-"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def _show_stats_panel(stats: dict[str, StageStats]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Stage", style="bold")
    table.add_column("Field", style="dim")
    table.add_column("Value")

    for stage, record in stats.items():
        first = True
        for key, value in stats_to_dict(record).items():
            if key == "stage":
                continue
            table.add_row(stage if first else "", key, _format_value(value))
            first = False

    console.print(Panel(table, title="[bold]Stage statistics[/]", expand=False))


def _show_clusters_panel(clusters: list[Cluster]) -> None:
    table = Table(box=None, padding=(0, 1))
    table.add_column("Cluster", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Members", justify="right")
    table.add_column("Description")

    for cluster in clusters:
        name = cluster.display_name
        if cluster.is_noise:
            name = "[yellow]noise[/]"
        table.add_row(cluster.id, name, str(cluster.member_count), cluster.description or "")

    named = sum(1 for c in clusters if not c.is_noise and c.name)
    real = sum(1 for c in clusters if not c.is_noise)
    console.print(
        Panel(
            table,
            title=f"[bold]Clusters[/] [dim]({named}/{real} named)[/]",
            expand=False,
        )
    )
