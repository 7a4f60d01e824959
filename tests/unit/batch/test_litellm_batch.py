"""Tests for the LiteLLM batch and embedding services (litellm mocked)."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from corpusmap.batch.base import (
    BatchRequest,
    BatchStatus,
    BatchValidationError,
    EmbeddingServiceError,
)
from corpusmap.batch.litellm_batch import (
    LiteLLMBatchService,
    LiteLLMEmbeddingService,
    api_key_env,
    split_model,
    validate_api_key,
)

_MOD = "corpusmap.batch.litellm_batch.litellm"


# ------------------------------------------------------------------
# API keys
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        validate_api_key("openai/gpt-4o-mini")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    validate_api_key("anthropic/claude-3-5-haiku-20241022")


def test_validate_api_key_ollama_no_key_required():
    validate_api_key("ollama/llama3")


def test_split_model_bare_name_is_openai():
    assert split_model("gpt-4o-mini") == ("openai", "gpt-4o-mini")


def test_api_key_env():
    assert api_key_env("voyage/voyage-law-2") == "VOYAGE_API_KEY"
    assert api_key_env("ollama/llama3") is None


# ------------------------------------------------------------------
# Batch submission
# ------------------------------------------------------------------


def test_submit_batch_uploads_jsonl():
    service = LiteLLMBatchService("openai/gpt-4o-mini")
    create_file = AsyncMock(return_value=SimpleNamespace(id="file-1"))
    create_batch = AsyncMock(return_value=SimpleNamespace(id="batch-1"))
    reqs = [BatchRequest("document:d1", "hello", system="sys", max_tokens=50)]

    with patch(f"{_MOD}.acreate_file", create_file), patch(f"{_MOD}.acreate_batch", create_batch):
        handle = asyncio.run(service.submit_batch(reqs))

    assert handle == "batch-1"
    _, payload = create_file.call_args.kwargs["file"]
    line = json.loads(payload.decode("utf-8").strip())
    assert line["custom_id"] == "document:d1"
    assert line["body"]["model"] == "gpt-4o-mini"
    assert line["body"]["messages"][0] == {"role": "system", "content": "sys"}
    assert line["body"]["max_tokens"] == 50
    assert create_batch.call_args.kwargs["input_file_id"] == "file-1"
    assert create_batch.call_args.kwargs["custom_llm_provider"] == "openai"


def test_submit_batch_validates_before_upload():
    service = LiteLLMBatchService("openai/gpt-4o-mini")
    create_file = AsyncMock()
    with patch(f"{_MOD}.acreate_file", create_file):
        with pytest.raises(BatchValidationError):
            asyncio.run(service.submit_batch([]))
    create_file.assert_not_called()


# ------------------------------------------------------------------
# Status mapping
# ------------------------------------------------------------------


def _batch(status, output_file_id=None, completed=0, failed=0, total=0, errors=None):
    return SimpleNamespace(
        id="batch-1",
        status=status,
        output_file_id=output_file_id,
        error_file_id=None,
        errors=errors,
        request_counts=SimpleNamespace(total=total, completed=completed, failed=failed),
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        (_batch("validating"), BatchStatus.PENDING),
        (_batch("in_progress", total=10, completed=4, failed=1), BatchStatus.PENDING),
        (_batch("completed", "out-1"), BatchStatus.COMPLETED),
        (_batch("expired", "out-1"), BatchStatus.COMPLETED),
        (_batch("expired"), BatchStatus.ERRORED),
        (_batch("failed", errors={"data": ["bad model"]}), BatchStatus.ERRORED),
    ],
)
def test_get_batch_status_mapping(raw, expected):
    service = LiteLLMBatchService("openai/gpt-4o-mini")
    with patch(f"{_MOD}.aretrieve_batch", AsyncMock(return_value=raw)):
        state = asyncio.run(service.get_batch_status("batch-1"))
    assert state.status is expected


def test_get_batch_status_counts():
    service = LiteLLMBatchService("openai/gpt-4o-mini")
    raw = _batch("in_progress", total=10, completed=4, failed=1)
    with patch(f"{_MOD}.aretrieve_batch", AsyncMock(return_value=raw)):
        state = asyncio.run(service.get_batch_status("batch-1"))
    assert (state.done, state.total) == (5, 10)


# ------------------------------------------------------------------
# Result streaming
# ------------------------------------------------------------------


def _ok_line(custom_id, content):
    return json.dumps(
        {
            "custom_id": custom_id,
            "response": {
                "status_code": 200,
                "body": {"choices": [{"message": {"content": content}}]},
            },
        }
    )


def test_stream_batch_results_reads_output_and_error_files():
    service = LiteLLMBatchService("openai/gpt-4o-mini")
    raw = _batch("completed", "out-1")
    raw.error_file_id = "err-1"
    files = {
        "out-1": "\n".join(
            [
                _ok_line("document:a", '{"status": "FirmDrafted"}'),
                "not json",
                json.dumps(
                    {
                        "custom_id": "document:b",
                        "response": {"status_code": 400, "body": {"error": {"message": "too long"}}},
                    }
                ),
            ]
        ),
        "err-1": json.dumps({"custom_id": "document:c", "error": {"message": "server error"}}),
    }

    async def _content(file_id, custom_llm_provider):
        return SimpleNamespace(text=files[file_id])

    async def _collect():
        return [item async for item in service.stream_batch_results("batch-1")]

    with patch(f"{_MOD}.aretrieve_batch", AsyncMock(return_value=raw)), patch(
        f"{_MOD}.afile_content", _content
    ):
        items = asyncio.run(_collect())

    by_id = {item.custom_id: item for item in items}
    assert set(by_id) == {"document:a", "document:b", "document:c"}
    assert by_id["document:a"].content == '{"status": "FirmDrafted"}'
    assert by_id["document:b"].error == "too long"
    assert by_id["document:c"].error == "server error"
    assert not by_id["document:c"].succeeded


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


def test_embed_returns_vectors_in_input_order():
    response = MagicMock()
    response.data = [
        {"index": 1, "embedding": [0.0, 1.0]},
        {"index": 0, "embedding": [1.0, 0.0]},
    ]
    service = LiteLLMEmbeddingService("openai/text-embedding-3-small", 2)
    with patch(f"{_MOD}.aembedding", AsyncMock(return_value=response)) as mock:
        vectors = asyncio.run(service.embed(["a", "b"]))

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert mock.call_args.kwargs["num_retries"] == 3


def test_embed_wraps_provider_errors():
    service = LiteLLMEmbeddingService("openai/text-embedding-3-small", 2)
    with patch(f"{_MOD}.aembedding", AsyncMock(side_effect=RuntimeError("rate limited"))):
        with pytest.raises(EmbeddingServiceError, match="rate limited"):
            asyncio.run(service.embed(["a"]))


def test_embed_count_mismatch_is_an_error():
    response = MagicMock()
    response.data = [{"index": 0, "embedding": [1.0, 0.0]}]
    service = LiteLLMEmbeddingService("openai/text-embedding-3-small", 2)
    with patch(f"{_MOD}.aembedding", AsyncMock(return_value=response)):
        with pytest.raises(EmbeddingServiceError, match="Expected 2"):
            asyncio.run(service.embed(["a", "b"]))
