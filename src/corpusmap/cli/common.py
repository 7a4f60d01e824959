"""Shared options and helpers for CLI commands."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from corpusmap.cli.errors import err_config, err_no_db
from corpusmap.config import ConfigError, CorpusmapConfig, load_config
from corpusmap.db.connection import Database
from corpusmap.db.schema import initialize

console = Console()

DEFAULT_DB = Path(".corpusmap.db")

DbOption = Annotated[Path, typer.Option("--db", help="Path to .corpusmap.db.")]
VerboseOption = Annotated[
    bool, typer.Option("--verbose", "-v", help="Show debug logging.")
]


def open_db(db_path: Path, *, must_exist: bool = True) -> sqlite3.Connection:
    """Open and migrate the database; exit 1 when it is missing."""
    if must_exist and not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def load_cfg() -> CorpusmapConfig:
    """Load config or exit 1 with an actionable message."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
