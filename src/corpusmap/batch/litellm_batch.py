"""LiteLLM-backed batch and embedding services.

Batch prompts go through the provider batch API: the requests are written as
a JSONL file, uploaded with ``litellm.acreate_file`` and submitted with
``litellm.acreate_batch``. Results come back as JSONL via
``litellm.afile_content``. Embeddings use ``litellm.aembedding`` with
LiteLLM's built-in retry.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Sequence
from typing import Any

import litellm

from corpusmap.batch.base import (
    BatchItemResult,
    BatchRequest,
    BatchState,
    BatchStatus,
    EmbeddingServiceError,
    validate_requests,
)

logger = logging.getLogger(__name__)

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

_CHAT_ENDPOINT = "/v1/chat/completions"
_COMPLETION_WINDOW = "24h"

_PENDING = frozenset(["validating", "in_progress", "finalizing", "cancelling"])
_FAILED = frozenset(["failed", "cancelled", "expired"])


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "ollama": None,  # Local, no key required
}


def split_model(model: str) -> tuple[str, str]:
    """Split 'provider/model' into its parts; bare names default to openai."""
    if "/" in model:
        provider, name = model.split("/", 1)
        return provider.lower(), name
    return "openai", model


def api_key_env(model: str) -> str | None:
    """Env var holding the API key for *model*'s provider (None for local providers)."""
    provider, _ = split_model(model)
    if provider in _PROVIDER_ENV:
        return _PROVIDER_ENV[provider]
    return f"{provider.upper()}_API_KEY"


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider, _ = split_model(model)
    env_var = _PROVIDER_ENV.get(provider)
    if env_var is None:
        return
    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


# ------------------------------------------------------------------
# Batch service
# ------------------------------------------------------------------


class LiteLLMBatchService:
    """Chat-completion batches through the provider batch API.

    Args:
        model: LiteLLM model string ('provider/model'). The provider part selects
            ``custom_llm_provider``; the rest is written into each request body.
    """

    def __init__(self, model: str) -> None:
        self.model = model
        self._provider, self._model_name = split_model(model)

    def _jsonl(self, requests: Sequence[BatchRequest]) -> bytes:
        lines = []
        for req in requests:
            messages = []
            if req.system:
                messages.append({"role": "system", "content": req.system})
            messages.append({"role": "user", "content": req.prompt})
            lines.append(
                json.dumps(
                    {
                        "custom_id": req.custom_id,
                        "method": "POST",
                        "url": _CHAT_ENDPOINT,
                        "body": {
                            "model": self._model_name,
                            "messages": messages,
                            "max_tokens": req.max_tokens,
                            "temperature": req.temperature,
                        },
                    },
                    ensure_ascii=False,
                )
            )
        return ("\n".join(lines) + "\n").encode("utf-8")

    async def submit_batch(self, requests: Sequence[BatchRequest]) -> str:
        """Validate, upload and submit *requests*. Returns the batch id."""
        estimated = validate_requests(requests)
        file_obj = await litellm.acreate_file(
            file=("batch.jsonl", self._jsonl(requests)),
            purpose="batch",
            custom_llm_provider=self._provider,
        )
        batch = await litellm.acreate_batch(
            completion_window=_COMPLETION_WINDOW,
            endpoint=_CHAT_ENDPOINT,
            input_file_id=file_obj.id,
            custom_llm_provider=self._provider,
        )
        logger.debug(
            "batch uploaded handle=%s items=%d est_tokens=%d",
            batch.id,
            len(requests),
            estimated,
        )
        return batch.id

    async def _retrieve(self, handle: str) -> Any:
        return await litellm.aretrieve_batch(
            batch_id=handle, custom_llm_provider=self._provider
        )

    async def get_batch_status(self, handle: str) -> BatchState:
        batch = await self._retrieve(handle)
        status = _field(batch, "status", "")
        counts = _field(batch, "request_counts")
        total = int(_field(counts, "total", 0) or 0) if counts is not None else 0
        done = 0
        if counts is not None:
            done = int(_field(counts, "completed", 0) or 0) + int(
                _field(counts, "failed", 0) or 0
            )

        if status == "completed":
            return BatchState(BatchStatus.COMPLETED, total=total, done=done)
        if status in _FAILED:
            # Expired/cancelled batches still publish the items that finished.
            if status != "failed" and _field(batch, "output_file_id"):
                return BatchState(BatchStatus.COMPLETED, total=total, done=done)
            errors = _field(batch, "errors")
            detail = str(_field(errors, "data", errors) or status)
            return BatchState(BatchStatus.ERRORED, total=total, done=done, error=detail)
        if status not in _PENDING:
            logger.warning("batch %s reported unknown status %r", handle, status)
        return BatchState(BatchStatus.PENDING, total=total, done=done)

    async def _file_lines(self, file_id: str | None) -> list[str]:
        if not file_id:
            return []
        content = await litellm.afile_content(
            file_id=file_id, custom_llm_provider=self._provider
        )
        text = content.text if hasattr(content, "text") else content.content.decode("utf-8")
        return [line for line in text.splitlines() if line.strip()]

    async def stream_batch_results(self, handle: str) -> AsyncIterator[BatchItemResult]:
        """Yield one result per line of the batch output and error files."""
        batch = await self._retrieve(handle)
        for file_id in (_field(batch, "output_file_id"), _field(batch, "error_file_id")):
            for line in await self._file_lines(file_id):
                result = _parse_result_line(line)
                if result is not None:
                    yield result


def _parse_result_line(line: str) -> BatchItemResult | None:
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("skipping unreadable batch result line: %.120s", line)
        return None
    custom_id = record.get("custom_id")
    if not custom_id:
        return None

    if record.get("error"):
        error = record["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        return BatchItemResult(custom_id, error=message or "item error")

    response = record.get("response") or {}
    status_code = response.get("status_code", 200)
    body = response.get("body") or {}
    if status_code != 200:
        message = (body.get("error") or {}).get("message") or f"HTTP {status_code}"
        return BatchItemResult(custom_id, error=message)

    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return BatchItemResult(custom_id, error="response has no message content")
    return BatchItemResult(custom_id, content=content or "")


# ------------------------------------------------------------------
# Embedding service
# ------------------------------------------------------------------


class LiteLLMEmbeddingService:
    """Embeddings via ``litellm.aembedding`` with retry/backoff."""

    def __init__(self, model: str, dimensions: int, num_retries: int = 3) -> None:
        self.model = model
        self.dimensions = dimensions
        self.num_retries = num_retries

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            response = await litellm.aembedding(
                model=self.model,
                input=list(texts),
                num_retries=self.num_retries,
            )
        except Exception as exc:
            raise EmbeddingServiceError(f"{type(exc).__name__}: {exc}") from exc

        data = sorted(response.data, key=lambda item: _field(item, "index", 0))
        vectors = [list(_field(item, "embedding")) for item in data]
        if len(vectors) != len(texts):
            raise EmbeddingServiceError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}"
            )
        return vectors
