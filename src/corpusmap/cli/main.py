"""Corpusmap CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from corpusmap.cli.assign import assign_cmd
from corpusmap.cli.init import init_cmd
from corpusmap.cli.load import load_cmd
from corpusmap.cli.recover import recover_cmd
from corpusmap.cli.run import reset_cmd, resume_cmd, run_cmd
from corpusmap.cli.status import status_cmd


def _version_callback(value: bool) -> None:
    if value:
        try:
            ver = importlib.metadata.version("corpusmap")
        except importlib.metadata.PackageNotFoundError:
            ver = "dev"
        typer.echo(f"corpusmap {ver}")
        raise typer.Exit()


app = typer.Typer(
    name="corpusmap",
    help=(
        "Corpusmap — document categorization pipeline.\n\n"
        "  corpusmap load    Import extracted documents into a session.\n"
        "  corpusmap run     Triage, deduplicate, embed, cluster and name them."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Corpusmap — document categorization pipeline."""


app.command("init")(init_cmd)
app.command("load")(load_cmd)
app.command("run")(run_cmd)
app.command("resume")(resume_cmd)
app.command("reset")(reset_cmd)
app.command("recover")(recover_cmd)
app.command("status")(status_cmd)
app.command("assign")(assign_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Corpusmap version."""
    try:
        ver = importlib.metadata.version("corpusmap")
    except importlib.metadata.PackageNotFoundError:
        ver = "dev"
    typer.echo(f"corpusmap {ver}")


if __name__ == "__main__":
    app()
