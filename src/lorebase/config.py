"""lorebase configuration loader.

Priority (high → low):
  1. --data-dir and other command options (applied by the CLI)
  2. Environment variables  (LOREBASE_DATA_DIR, LOREBASE_EMBEDDING_MODEL,
                             LOREBASE_EMBEDDING_API_BASE)
  3. Per-project lorebase.yaml
  4. Global ~/.lorebase/config.yaml
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
Files are parsed with yaml.safe_load().
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

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".lorebase"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "lorebase.yaml"

# Matches api_key, api-key, api_secret, *_token, token, *_secret, secret,
# password, passwd, credential(s). Does NOT match rrf_k or max_results.
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
    ["paths", "embedding", "chunking", "search", "reconcile"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


def default_data_root() -> Path:
    """Return the XDG data directory used when nothing else is configured."""
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "lorebase"


@dataclass
class PathsCfg:
    """Where the corpus and its index live (lorebase.yaml: paths:).

    Attributes:
        data_root: Root of the scope directory tree.
        index_path: SQLite index file. Defaults to
            ``<data_root>/shared/index.sqlite3`` when unset.
    """

    data_root: Path = field(default_factory=default_data_root)
    index_path: Path | None = None

    def resolved_index_path(self) -> Path:
        if self.index_path is not None:
            return self.index_path
        return self.data_root / "shared" / "index.sqlite3"


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (lorebase.yaml: embedding:)."""

    model: str = "ollama/qwen3-embedding:8b"
    api_base: str | None = "http://127.0.0.1:11434"
    batch_size: int = 32


@dataclass
class ChunkingCfg:
    """Chunker thresholds (lorebase.yaml: chunking:).

    Attributes:
        single_chunk_chars: Bodies shorter than this produce exactly one chunk.
        min_section_chars: Heading sections shorter than this merge forward.
        chunk_size: Fixed-window size in tokens (4 chars ≈ 1 token).
        overlap: Fixed-window overlap fraction.
    """

    single_chunk_chars: int = 1500
    min_section_chars: int = 200
    chunk_size: int = 375
    overlap: float = 0.10


@dataclass
class SearchCfg:
    """Query engine configuration (lorebase.yaml: search:)."""

    rrf_k: int = 60
    max_results: int = 8
    bm25_limit: int = 20
    dense_limit: int = 20
    graph_depth: int = 1
    graph_max: int = 20
    tag_sibling_max: int = 5


@dataclass
class ReconcileCfg:
    """Background reconciliation (lorebase.yaml: reconcile:)."""

    interval_seconds: int = 300
    debounce_ms: int = 2000
    workers: int = 4


@dataclass
class LorebaseConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    paths: PathsCfg = field(default_factory=PathsCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    reconcile: ReconcileCfg = field(default_factory=ReconcileCfg)


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
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def _positive(name: str, value: int) -> int:
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return value


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


def _cfg_from_dict(data: dict[str, Any]) -> LorebaseConfig:
    """Build a *LorebaseConfig* from a merged raw YAML dict."""
    cfg = LorebaseConfig()

    if "paths" in data:
        p = data["paths"] or {}
        root = p.get("data_root")
        index = p.get("index_path")
        cfg.paths = PathsCfg(
            data_root=Path(root).expanduser() if root else cfg.paths.data_root,
            index_path=Path(index).expanduser() if index else None,
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            api_base=e.get("api_base", cfg.embedding.api_base) or None,
            batch_size=_positive(
                "embedding.batch_size", int(e.get("batch_size", cfg.embedding.batch_size))
            ),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingCfg(
            single_chunk_chars=int(
                c.get("single_chunk_chars", cfg.chunking.single_chunk_chars)
            ),
            min_section_chars=int(c.get("min_section_chars", cfg.chunking.min_section_chars)),
            chunk_size=_positive(
                "chunking.chunk_size", int(c.get("chunk_size", cfg.chunking.chunk_size))
            ),
            overlap=float(c.get("overlap", cfg.chunking.overlap)),
        )

    if "search" in data:
        s = data["search"] or {}
        cfg.search = SearchCfg(
            rrf_k=_positive("search.rrf_k", int(s.get("rrf_k", cfg.search.rrf_k))),
            max_results=int(s.get("max_results", cfg.search.max_results)),
            bm25_limit=int(s.get("bm25_limit", cfg.search.bm25_limit)),
            dense_limit=int(s.get("dense_limit", cfg.search.dense_limit)),
            graph_depth=int(s.get("graph_depth", cfg.search.graph_depth)),
            graph_max=int(s.get("graph_max", cfg.search.graph_max)),
            tag_sibling_max=int(s.get("tag_sibling_max", cfg.search.tag_sibling_max)),
        )

    if "reconcile" in data:
        r = data["reconcile"] or {}
        cfg.reconcile = ReconcileCfg(
            interval_seconds=_positive(
                "reconcile.interval_seconds",
                int(r.get("interval_seconds", cfg.reconcile.interval_seconds)),
            ),
            debounce_ms=int(r.get("debounce_ms", cfg.reconcile.debounce_ms)),
            workers=_positive("reconcile.workers", int(r.get("workers", cfg.reconcile.workers))),
        )

    return cfg


def _apply_env_overrides(cfg: LorebaseConfig) -> LorebaseConfig:
    """Apply LOREBASE_* environment variable overrides (layer 2)."""
    if root := os.environ.get("LOREBASE_DATA_DIR"):
        cfg.paths.data_root = Path(root).expanduser()
    if model := os.environ.get("LOREBASE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if api_base := os.environ.get("LOREBASE_EMBEDDING_API_BASE"):
        cfg.embedding.api_base = api_base
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LorebaseConfig:
    """Load and return a merged *LorebaseConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *lorebase.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or a
            numeric setting is out of range.
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
    return _apply_env_overrides(cfg)
