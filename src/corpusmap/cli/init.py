"""corpusmap init — create the database and the global config template.

Creates:
  .corpusmap.db               — pipeline database with schema (migrated if present)
  ~/.corpusmap/config.yaml    — global model config (created once, mode 0o600)
"""

from __future__ import annotations

import typer

from corpusmap.cli.common import DEFAULT_DB, DbOption, VerboseOption, console, open_db
from corpusmap.config import ensure_global_config
from corpusmap.db.migrations import current_version
from corpusmap.log import configure_logging


def init_cmd(
    db: DbOption = DEFAULT_DB,
    verbose: VerboseOption = False,
) -> None:
    """Create (or migrate) the pipeline database."""
    configure_logging(verbose)
    existed = db.exists()
    conn = open_db(db, must_exist=False)
    try:
        version = current_version(conn)
    finally:
        conn.close()

    verb = "Migrated" if existed else "Created"
    console.print(f"  [green]✓[/] {verb} {db} (schema v{version})")

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")
    raise typer.Exit(0)
