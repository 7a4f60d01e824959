"""Tolerant JSON extraction from free-form model output.

Model responses are expected to contain one JSON object but routinely wrap it
in a fenced code block or surround it with prose. ``extract_json`` finds the
first well-formed object; the typed parsers on top of it return either a
result dataclass or a ``ParseError`` value. Nothing here raises on malformed
input.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Union

from corpusmap.db.models import TriageStatus

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)

MAX_CLUSTER_NAME_CHARS = 80


@dataclass(frozen=True)
class ParseError:
    """Why a response could not be turned into a result."""

    reason: str
    raw: str = ""


@dataclass(frozen=True)
class TriageResult:
    status: TriageStatus
    confidence: float
    reason: str


@dataclass(frozen=True)
class ClusterName:
    name: str
    description: str | None = None


ParsedTriage = Union[TriageResult, ParseError]
ParsedName = Union[ClusterName, ParseError]


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def _scan_objects(text: str):
    """Yield candidate ``{...}`` substrings with balanced braces, in order.

    Braces inside JSON strings are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield text[start : i + 1]
                    break
        start = text.find("{", start + 1)


def _first_object(text: str) -> dict[str, Any] | None:
    for candidate in _scan_objects(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def extract_json(text: str | None) -> dict[str, Any] | ParseError:
    """Return the first well-formed JSON object found in *text*.

    Fenced code blocks are searched first, then the raw text.
    """
    if not text or not text.strip():
        return ParseError("empty response")

    for block in _FENCE_RE.findall(text):
        found = _first_object(block)
        if found is not None:
            return found

    found = _first_object(text)
    if found is not None:
        return found
    return ParseError("no JSON object found in response", raw=text[:200])


# ---------------------------------------------------------------------------
# Typed parsers
# ---------------------------------------------------------------------------


def parse_triage(text: str | None) -> ParsedTriage:
    """Parse a triage classification response.

    Expects ``{"status": ..., "confidence": ..., "reason": ...}``. Confidence is
    clamped to [0, 1]; a missing confidence counts as 0.
    """
    data = extract_json(text)
    if isinstance(data, ParseError):
        return data

    raw_status = data.get("status")
    try:
        status = TriageStatus(raw_status)
    except ValueError:
        return ParseError(f"unknown triage status: {raw_status!r}", raw=str(data)[:200])

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        return ParseError(
            f"invalid confidence: {data.get('confidence')!r}", raw=str(data)[:200]
        )
    confidence = min(max(confidence, 0.0), 1.0)

    reason = str(data.get("reason") or "").strip()
    return TriageResult(status=status, confidence=confidence, reason=reason)


def parse_cluster_name(text: str | None) -> ParsedName:
    """Parse a naming response: ``{"name": ..., "description": ...}``.

    The name is truncated to 80 characters. An empty name is a parse error.
    """
    data = extract_json(text)
    if isinstance(data, ParseError):
        return data

    name = str(data.get("name") or "").strip()
    if not name:
        return ParseError("response has no name", raw=str(data)[:200])
    description = data.get("description")
    if description is not None:
        description = str(description).strip() or None
    return ClusterName(name=name[:MAX_CLUSTER_NAME_CHARS], description=description)
