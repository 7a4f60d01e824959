"""Corpusmap configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (CORPUSMAP_TRIAGE_MODEL, CORPUSMAP_EMBEDDING_MODEL,
                             CORPUSMAP_NAMING_MODEL)
  3. Per-project corpusmap.yaml  (working directory)
  4. Global ~/.corpusmap/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".corpusmap"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "corpusmap.yaml"

# Per-batch item limit of the batch classification service.
MAX_BATCH_ITEMS: int = 10_000

# Fields that suggest an API key — forbidden in global config.
# Does NOT match legitimate config keys like max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["triage", "embedding", "reduction", "clustering", "naming", "polling"]
)

_SELECTION_METHODS: frozenset[str] = frozenset(["eom", "leaf"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class TriageCfg:
    """Batch triage configuration (corpusmap.yaml: triage:)."""

    model: str = "openai/gpt-4o-mini"
    batch_size: int = 1_000
    max_text_chars: int = 4_000
    max_tokens: int = 256
    temperature: float = 0.0


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (corpusmap.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1_536
    batch_size: int = 64
    concurrency: int = 4
    max_text_chars: int = 8_000


@dataclass
class ReductionCfg:
    """UMAP parameters (corpusmap.yaml: reduction:)."""

    n_components: int = 10
    n_neighbors: int = 15
    min_dist: float = 0.0
    metric: str = "cosine"
    random_state: int | None = 42


@dataclass
class ClusteringCfg:
    """HDBSCAN parameters (corpusmap.yaml: clustering:).

    Attributes:
        min_cluster_size: Smallest group HDBSCAN will call a cluster.
        min_samples: Neighbourhood size for core points; None uses the
            library default (= min_cluster_size).
        metric: Distance metric in the reduced space.
        selection_method: 'eom' (excess of mass) or 'leaf'.
    """

    min_cluster_size: int = 5
    min_samples: int | None = None
    metric: str = "euclidean"
    selection_method: str = "eom"


@dataclass
class NamingCfg:
    """Cluster naming configuration (corpusmap.yaml: naming:)."""

    model: str = "openai/gpt-4o-mini"
    sample_size: int = 5
    language: str = "Romanian"
    max_text_chars: int = 1_500
    max_tokens: int = 128


@dataclass
class PollingCfg:
    """Batch poll loop configuration (corpusmap.yaml: polling:). Seconds."""

    initial_interval: float = 30.0
    max_interval: float = 120.0
    backoff: float = 1.5
    max_attempts: int = 500
    max_duration: float = 14_400.0


@dataclass
class CorpusmapConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    triage: TriageCfg = field(default_factory=TriageCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    reduction: ReductionCfg = field(default_factory=ReductionCfg)
    clustering: ClusteringCfg = field(default_factory=ClusteringCfg)
    naming: NamingCfg = field(default_factory=NamingCfg)
    polling: PollingCfg = field(default_factory=PollingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _positive(section: str, name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{section}.{name} must be > 0, got {value}")


def validate_config(cfg: CorpusmapConfig) -> CorpusmapConfig:
    """Raise ConfigError on out-of-range values. Returns *cfg* unchanged."""
    t = cfg.triage
    _positive("triage", "batch_size", t.batch_size)
    if t.batch_size > MAX_BATCH_ITEMS:
        raise ConfigError(
            f"triage.batch_size must be <= {MAX_BATCH_ITEMS} "
            f"(batch service item limit), got {t.batch_size}"
        )
    _positive("triage", "max_text_chars", t.max_text_chars)
    _positive("triage", "max_tokens", t.max_tokens)

    e = cfg.embedding
    for name in ("dimensions", "batch_size", "concurrency", "max_text_chars"):
        _positive("embedding", name, getattr(e, name))

    r = cfg.reduction
    _positive("reduction", "n_components", r.n_components)
    if r.n_neighbors < 2:
        raise ConfigError(f"reduction.n_neighbors must be >= 2, got {r.n_neighbors}")
    if r.min_dist < 0:
        raise ConfigError(f"reduction.min_dist must be >= 0, got {r.min_dist}")

    c = cfg.clustering
    if c.min_cluster_size < 2:
        raise ConfigError(
            f"clustering.min_cluster_size must be >= 2, got {c.min_cluster_size}"
        )
    if c.min_samples is not None:
        _positive("clustering", "min_samples", c.min_samples)
    if c.selection_method not in _SELECTION_METHODS:
        raise ConfigError(
            f"clustering.selection_method must be one of "
            f"{sorted(_SELECTION_METHODS)}, got '{c.selection_method}'"
        )

    n = cfg.naming
    for name in ("sample_size", "max_text_chars", "max_tokens"):
        _positive("naming", name, getattr(n, name))

    p = cfg.polling
    if p.initial_interval < 0 or p.max_interval < 0:
        raise ConfigError("polling intervals must be >= 0")
    if p.backoff < 1:
        raise ConfigError(f"polling.backoff must be >= 1, got {p.backoff}")
    _positive("polling", "max_attempts", p.max_attempts)
    _positive("polling", "max_duration", p.max_duration)
    return cfg


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _cfg_from_dict(data: dict[str, Any]) -> CorpusmapConfig:
    """Build a *CorpusmapConfig* from a merged raw YAML dict."""
    cfg = CorpusmapConfig()

    try:
        if "triage" in data:
            t = data["triage"] or {}
            cfg.triage = TriageCfg(
                model=str(t.get("model", cfg.triage.model)),
                batch_size=int(t.get("batch_size", cfg.triage.batch_size)),
                max_text_chars=int(t.get("max_text_chars", cfg.triage.max_text_chars)),
                max_tokens=int(t.get("max_tokens", cfg.triage.max_tokens)),
                temperature=float(t.get("temperature", cfg.triage.temperature)),
            )

        if "embedding" in data:
            e = data["embedding"] or {}
            cfg.embedding = EmbeddingCfg(
                model=str(e.get("model", cfg.embedding.model)),
                dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
                batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
                concurrency=int(e.get("concurrency", cfg.embedding.concurrency)),
                max_text_chars=int(
                    e.get("max_text_chars", cfg.embedding.max_text_chars)
                ),
            )

        if "reduction" in data:
            r = data["reduction"] or {}
            cfg.reduction = ReductionCfg(
                n_components=int(r.get("n_components", cfg.reduction.n_components)),
                n_neighbors=int(r.get("n_neighbors", cfg.reduction.n_neighbors)),
                min_dist=float(r.get("min_dist", cfg.reduction.min_dist)),
                metric=str(r.get("metric", cfg.reduction.metric)),
                random_state=_optional_int(
                    r.get("random_state", cfg.reduction.random_state)
                ),
            )

        if "clustering" in data:
            c = data["clustering"] or {}
            cfg.clustering = ClusteringCfg(
                min_cluster_size=int(
                    c.get("min_cluster_size", cfg.clustering.min_cluster_size)
                ),
                min_samples=_optional_int(
                    c.get("min_samples", cfg.clustering.min_samples)
                ),
                metric=str(c.get("metric", cfg.clustering.metric)),
                selection_method=str(
                    c.get("selection_method", cfg.clustering.selection_method)
                ),
            )

        if "naming" in data:
            n = data["naming"] or {}
            cfg.naming = NamingCfg(
                model=str(n.get("model", cfg.naming.model)),
                sample_size=int(n.get("sample_size", cfg.naming.sample_size)),
                language=str(n.get("language", cfg.naming.language)),
                max_text_chars=int(n.get("max_text_chars", cfg.naming.max_text_chars)),
                max_tokens=int(n.get("max_tokens", cfg.naming.max_tokens)),
            )

        if "polling" in data:
            p = data["polling"] or {}
            cfg.polling = PollingCfg(
                initial_interval=float(
                    p.get("initial_interval", cfg.polling.initial_interval)
                ),
                max_interval=float(p.get("max_interval", cfg.polling.max_interval)),
                backoff=float(p.get("backoff", cfg.polling.backoff)),
                max_attempts=int(p.get("max_attempts", cfg.polling.max_attempts)),
                max_duration=float(p.get("max_duration", cfg.polling.max_duration)),
            )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: CorpusmapConfig) -> CorpusmapConfig:
    """Apply CORPUSMAP_* environment variable overrides (layer 2)."""
    if model := os.environ.get("CORPUSMAP_TRIAGE_MODEL"):
        cfg.triage.model = model
    if model := os.environ.get("CORPUSMAP_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("CORPUSMAP_NAMING_MODEL"):
        cfg.naming.model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CorpusmapConfig:
    """Load and return a merged *CorpusmapConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *corpusmap.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *CorpusmapConfig*.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if any
            value is malformed or out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    return validate_config(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.corpusmap/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Corpusmap global configuration — model defaults only.\n"
            "# NEVER store API keys here — use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "triage:\n"
            "  model: openai/gpt-4o-mini\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "  dimensions: 1536\n"
            "\n"
            "naming:\n"
            "  model: openai/gpt-4o-mini\n"
            "  language: Romanian\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
