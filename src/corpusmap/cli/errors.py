"""Corpusmap rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from corpusmap.cli.errors import err_no_db
    console.print(err_no_db(".corpusmap.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from corpusmap.batch.litellm_batch import api_key_env, split_model


def err_no_db(db_path: str = ".corpusmap.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  corpusmap init"
    )


def err_no_api_key(model: str) -> str:
    """No API key for the provider of *model*."""
    provider, _ = split_model(model)
    env_var = api_key_env(model) or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] No API key for '{provider}' (model '{model}').\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(message: str) -> str:
    """Config file is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix corpusmap.yaml or ~/.corpusmap/config.yaml and retry."
    )


def err_session_not_found(session_id: str) -> str:
    return (
        f"[red]Error:[/] Session '{session_id}' not found.\n"
        f"  Run:  corpusmap load {session_id} --jsonl <documents.jsonl>"
    )


def err_already_running(session_id: str, status: str) -> str:
    """run/resume on a session whose status is in progress."""
    return (
        f"[red]Error:[/] Session '{session_id}' is already in progress ({status}).\n"
        "  If the process that ran it was killed, resume with --force:\n"
        f"    corpusmap resume {session_id} --stage <stage> --force"
    )


def err_invalid_transition(message: str, session_id: str) -> str:
    return (
        f"[red]Error:[/] {message}.\n"
        f"  Check the current state:  corpusmap status {session_id}"
    )


def err_bad_jsonl(path: str, line_no: int, reason: str) -> str:
    """Malformed record in the input JSONL."""
    return (
        f"[red]Error:[/] {path}, line {line_no}: {reason}\n"
        "  Each line must be a JSON object with at least 'id' and 'text'.\n"
        "  Ids may only contain letters, digits, '.', '_' and '-' (max 55 characters)."
    )


def err_reassign(message: str) -> str:
    return (
        f"[red]Error:[/] {message}\n"
        "  List clusters with:  corpusmap status <session>"
    )


def warn_unresolved_batches(handles: list[str]) -> str:
    """Batches that did not finish in time — results can be recovered later."""
    listed = " ".join(handles)
    return (
        f"[yellow]⚠[/] {len(handles)} batch(es) did not finish and were left for recovery.\n"
        f"  Run later:  corpusmap recover {listed}"
    )
