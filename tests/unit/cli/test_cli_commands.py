"""Tests for the corpusmap command-line commands."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest
from conftest import FakeBatchService, FakeEmbeddingService, no_sleep, triage_reply
from typer.testing import CliRunner

from corpusmap.batch.base import BatchRequest
from corpusmap.batch.poller import PollPolicy
from corpusmap.cli.main import app
from corpusmap.config import ClusteringCfg, CorpusmapConfig, EmbeddingCfg
from corpusmap.db.connection import Database
from corpusmap.db.models import PipelineStatus, TriageStatus
from corpusmap.db.repository import Repository
from corpusmap.pipeline.orchestrator import Pipeline

runner = CliRunner()

DOCS = [
    {"id": "a1", "text": "lease agreement for the warehouse", "file_name": "a1.docx"},
    {"id": "a2", "text": "lease agreement for the office", "file_name": "a2.docx"},
    {"id": "a3", "text": "lease agreement for the shop", "file_name": "a3.docx"},
    {"id": "b1", "text": "loan facility opinion for the bank", "file_name": "b1.docx"},
    {"id": "b2", "text": "loan facility opinion for the fund", "file_name": "b2.docx"},
    {"id": "b3", "text": "loan facility opinion for the lender", "file_name": "b3.docx"},
    {"id": "x1", "text": "weekly newsletter", "email_subject": "News"},
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def workspace(tmp_path, monkeypatch):
    """Run every command in tmp_path with an isolated global config."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("corpusmap.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    for var in list(os.environ):
        if var.startswith("CORPUSMAP_"):
            monkeypatch.delenv(var)
    return tmp_path


def _write_jsonl(path: Path, records: list) -> Path:
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")
    return path


def _init_and_load(tmp_path: Path, records: list = DOCS) -> None:
    assert runner.invoke(app, ["init"]).exit_code == 0
    result = runner.invoke(app, ["load", "s1", "--jsonl", str(_write_jsonl(tmp_path / "docs.jsonl", records))])
    assert result.exit_code == 0, result.output


def _repo(tmp_path: Path) -> Repository:
    return Repository(Database(tmp_path / ".corpusmap.db").connect())


def _classify(req):
    if "newsletter" in req.prompt:
        return triage_reply("Irrelevant")
    return triage_reply("FirmDrafted")


def _name(req):
    return json.dumps({"name": "Contracte", "description": "Contracte redactate"})


@pytest.fixture
def fake_pipeline(monkeypatch):
    """Route run/resume/reset through in-memory services."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    cfg = CorpusmapConfig(
        embedding=EmbeddingCfg(model="test/embed", dimensions=8),
        clustering=ClusteringCfg(min_cluster_size=2),
    )

    def build(repo, _cfg):
        return Pipeline(
            repo,
            cfg,
            triage_service=FakeBatchService(_classify),
            naming_service=FakeBatchService(_name),
            embedding_service=FakeEmbeddingService(dimensions=8),
            policy=PollPolicy.immediate(),
            sleep=no_sleep,
        )

    monkeypatch.setattr("corpusmap.cli.run._build_pipeline", build)


# ---------------------------------------------------------------------------
# init / version
# ---------------------------------------------------------------------------


def test_init_creates_db_and_global_config(tmp_path):
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0
    assert (tmp_path / ".corpusmap.db").exists()
    assert (tmp_path / "home" / "config.yaml").exists()
    assert "Created" in result.output


def test_init_twice_migrates(tmp_path):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0
    assert "Migrated" in result.output


def test_version_flag():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.startswith("corpusmap ")


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------


def test_load_creates_session_and_documents(tmp_path):
    _init_and_load(tmp_path)

    repo = _repo(tmp_path)
    session = repo.get_session("s1")
    assert session.total_documents == 7
    assert repo.get_document("x1").email_subject == "News"
    assert repo.get_document("a1").file_name == "a1.docx"


def test_load_again_skips_existing(tmp_path):
    _init_and_load(tmp_path)
    extra = _write_jsonl(tmp_path / "more.jsonl", DOCS[:2] + [{"id": "c1", "text": "new"}])

    result = runner.invoke(app, ["load", "s1", "--jsonl", str(extra)])

    assert result.exit_code == 0
    assert "1 added" in result.output
    assert "2 already present" in result.output
    assert _repo(tmp_path).get_session("s1").total_documents == 8


def test_load_bad_line_writes_nothing(tmp_path):
    runner.invoke(app, ["init"])
    path = tmp_path / "bad.jsonl"
    path.write_text('{"id": "ok", "text": "fine"}\n{"id": "bad id!", "text": "x"}\n', encoding="utf-8")

    result = runner.invoke(app, ["load", "s1", "--jsonl", str(path)])

    assert result.exit_code == 1
    assert "line 2" in result.output
    assert _repo(tmp_path).get_session("s1") is None


def test_load_invalid_json(tmp_path):
    runner.invoke(app, ["init"])
    path = tmp_path / "broken.jsonl"
    path.write_text("{not json\n", encoding="utf-8")

    result = runner.invoke(app, ["load", "s1", "--jsonl", str(path)])

    assert result.exit_code == 1
    assert "invalid JSON" in result.output


def test_load_without_db_fails(tmp_path):
    path = _write_jsonl(tmp_path / "docs.jsonl", DOCS)

    result = runner.invoke(app, ["load", "s1", "--jsonl", str(path)])

    assert result.exit_code == 1
    assert "corpusmap init" in result.output


def test_load_missing_file(tmp_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["load", "s1", "--jsonl", "nope.jsonl"])

    assert result.exit_code == 1
    assert "File not found" in result.output


# ---------------------------------------------------------------------------
# run / resume / reset / status
# ---------------------------------------------------------------------------


def test_run_reaches_ready_for_validation(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)

    result = runner.invoke(app, ["run", "s1"])

    assert result.exit_code == 0, result.output
    assert "ReadyForValidation" in result.output
    repo = _repo(tmp_path)
    assert repo.get_session("s1").pipeline_status is PipelineStatus.READY_FOR_VALIDATION
    assert repo.get_document("x1").triage_status is TriageStatus.IRRELEVANT
    assert repo.get_document("x1").cluster_id is None


def test_run_twice_is_rejected(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    runner.invoke(app, ["run", "s1"])

    result = runner.invoke(app, ["run", "s1"])

    assert result.exit_code == 1
    assert "already in progress" in result.output


def test_run_unknown_session(tmp_path, fake_pipeline):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["run", "ghost"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_run_without_api_key(tmp_path, monkeypatch):
    _init_and_load(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    result = runner.invoke(app, ["run", "s1"])

    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_reset_then_resume_from_stage(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    runner.invoke(app, ["run", "s1"])

    reset = runner.invoke(app, ["reset", "s1"])
    resumed = runner.invoke(app, ["resume", "s1", "--stage", "cluster"])

    assert reset.exit_code == 0
    assert "NotStarted" in reset.output
    assert resumed.exit_code == 0, resumed.output
    assert _repo(tmp_path).get_session("s1").pipeline_status is PipelineStatus.READY_FOR_VALIDATION


def test_reset_not_started_is_rejected(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)

    result = runner.invoke(app, ["reset", "s1"])

    assert result.exit_code == 1


def test_resume_force_takes_over_stuck_session(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    repo = _repo(tmp_path)
    repo.update_session_status("s1", PipelineStatus.EMBEDDING)
    repo.connection.close()

    stuck = runner.invoke(app, ["resume", "s1", "--stage", "triage"])
    forced = runner.invoke(app, ["resume", "s1", "--stage", "triage", "--force"])

    assert stuck.exit_code == 1
    assert forced.exit_code == 0, forced.output


def test_status_shows_pipeline_and_clusters(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    runner.invoke(app, ["run", "s1"])

    result = runner.invoke(app, ["status", "s1"])

    assert result.exit_code == 0
    assert "ReadyForValidation" in result.output
    assert "Stage statistics" in result.output
    assert "Clusters" in result.output


def test_status_unknown_session(tmp_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["status", "ghost"])

    assert result.exit_code == 1
    assert "not found" in result.output


# ---------------------------------------------------------------------------
# assign
# ---------------------------------------------------------------------------


def test_assign_moves_document(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    runner.invoke(app, ["run", "s1"])
    repo = _repo(tmp_path)
    source = repo.get_document("a1").cluster_id
    target = next(c for c in repo.list_clusters("s1") if c.id != source and not c.is_noise)
    repo.connection.close()

    result = runner.invoke(app, ["assign", "a1", "--cluster", target.id])

    assert result.exit_code == 0, result.output
    assert _repo(tmp_path).get_document("a1").cluster_id == target.id


def test_assign_rejects_ineligible_document(tmp_path, fake_pipeline):
    _init_and_load(tmp_path)
    runner.invoke(app, ["run", "s1"])
    repo = _repo(tmp_path)
    target = next(c for c in repo.list_clusters("s1") if not c.is_noise)
    repo.connection.close()

    result = runner.invoke(app, ["assign", "x1", "--cluster", target.id])

    assert result.exit_code == 1
    assert "not clusterable" in result.output


# ---------------------------------------------------------------------------
# recover
# ---------------------------------------------------------------------------


def test_recover_nothing_to_do(tmp_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["recover"])

    assert result.exit_code == 0
    assert "Nothing to recover" in result.output


def test_recover_pending_requires_session(tmp_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["recover", "--pending"])

    assert result.exit_code == 1
    assert "--session" in result.output


def test_recover_rejects_unknown_stage(tmp_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["recover", "batch-1", "--stage", "embed"])

    assert result.exit_code == 1


def test_recover_pending_handles_from_ledger(tmp_path, monkeypatch):
    _init_and_load(tmp_path)
    service = FakeBatchService(lambda req: triage_reply("CourtDoc"))
    handle = asyncio.run(service.submit_batch([BatchRequest("document:a1", "p")]))
    repo = _repo(tmp_path)
    repo.record_batch_job(handle, "s1", "triage", ["a1"])
    repo.connection.close()
    monkeypatch.setattr("corpusmap.cli.recover._service_for", lambda cfg, stage: service)

    result = runner.invoke(app, ["recover", "--session", "s1", "--pending"])

    assert result.exit_code == 0, result.output
    assert "recovered" in result.output
    repo = _repo(tmp_path)
    assert repo.get_document("a1").triage_status is TriageStatus.COURT_DOC
    assert repo.get_batch_job(handle).status.value == "recovered"
