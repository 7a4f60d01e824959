"""Tests for corpusmap rich error messages."""

from __future__ import annotations

import pytest

from corpusmap.cli.errors import (
    err_already_running,
    err_bad_jsonl,
    err_config,
    err_invalid_transition,
    err_no_api_key,
    err_no_db,
    err_reassign,
    err_session_not_found,
    warn_unresolved_batches,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _has_action(msg: str) -> bool:
    """Every error must tell the user what to do next."""
    lower = msg.lower()
    return any(kw in lower for kw in ["run:", "set:", "export ", "corpusmap ", "fix "])


# ---------------------------------------------------------------------------
# err_no_api_key
# ---------------------------------------------------------------------------


def test_err_no_api_key_names_provider_and_env_var() -> None:
    msg = err_no_api_key("openai/gpt-4o-mini")
    assert "openai" in msg
    assert "OPENAI_API_KEY" in msg


def test_err_no_api_key_unknown_provider_fallback() -> None:
    msg = err_no_api_key("myprovider/some-model")
    assert "MYPROVIDER_API_KEY" in msg


def test_err_no_api_key_bare_model_defaults_to_openai() -> None:
    assert "OPENAI_API_KEY" in err_no_api_key("gpt-4o-mini")


# ---------------------------------------------------------------------------
# Session and pipeline errors
# ---------------------------------------------------------------------------


def test_err_session_not_found_suggests_load() -> None:
    msg = err_session_not_found("s1")
    assert "'s1'" in msg
    assert "corpusmap load s1" in msg


def test_err_already_running_suggests_force() -> None:
    msg = err_already_running("s1", "Embedding")
    assert "Embedding" in msg
    assert "--force" in msg


def test_err_invalid_transition_points_to_status() -> None:
    msg = err_invalid_transition("Cannot move from NotStarted to ReClustering", "s1")
    assert "NotStarted" in msg
    assert "corpusmap status s1" in msg


def test_err_bad_jsonl_has_line_and_reason() -> None:
    msg = err_bad_jsonl("docs.jsonl", 7, "missing 'id'")
    assert "docs.jsonl, line 7" in msg
    assert "missing 'id'" in msg


def test_warn_unresolved_batches_lists_handles() -> None:
    msg = warn_unresolved_batches(["batch-1", "batch-2"])
    assert "2 batch(es)" in msg
    assert "corpusmap recover batch-1 batch-2" in msg


# ---------------------------------------------------------------------------
# All errors are actionable
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "msg",
    [
        err_no_db(),
        err_no_api_key("openai/gpt-4o-mini"),
        err_config("triage.batch_size must be between 1 and 10000"),
        err_session_not_found("s1"),
        err_already_running("s1", "Triaging"),
        err_invalid_transition("bad transition", "s1"),
        err_reassign("Documents cannot be moved into the noise cluster"),
    ],
)
def test_every_error_has_cause_and_action(msg: str) -> None:
    assert msg.startswith("[red]Error:[/]")
    assert _has_action(msg)
