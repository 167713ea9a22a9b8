"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from lorebase.config import EmbeddingCfg, LorebaseConfig, PathsCfg, ReconcileCfg
from lorebase.db.connection import Database
from lorebase.db.schema import initialize
from lorebase.db.store import IndexStore
from lorebase.engine import KnowledgeEngine
from lorebase.ingest.embedding_client import EmbeddingClient
from lorebase.ingest.reconciler import Reconciler
from lorebase.paths import Layout

TEST_MODEL = "ollama/test-embed"
FAKE_DIMS = 16

_WORD_RE = re.compile(r"[a-z0-9]+")


def fake_vector(text: str) -> list[float]:
    """Deterministic bag-of-words vector: each token bumps one hashed bucket."""
    vec = [0.05] * FAKE_DIMS
    for word in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % FAKE_DIMS
        vec[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    return [v / norm for v in vec]


def fake_embedding(model: str, input: list[str], **kwargs: object) -> MagicMock:
    response = MagicMock()
    response.data = [{"embedding": fake_vector(text)} for text in input]
    return response


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "index.sqlite3")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def config(tmp_path) -> LorebaseConfig:
    return LorebaseConfig(
        paths=PathsCfg(data_root=tmp_path / "data"),
        embedding=EmbeddingCfg(model=TEST_MODEL, api_base=None, batch_size=8),
        reconcile=ReconcileCfg(interval_seconds=3600, debounce_ms=50, workers=2),
    )


@pytest.fixture
def layout(config) -> Layout:
    lay = Layout(config.paths.data_root)
    lay.ensure()
    return lay


@pytest.fixture
def store(config):
    s = IndexStore(config.paths.resolved_index_path(), TEST_MODEL).open()
    yield s
    s.close()


@pytest.fixture
def fake_embed():
    """Patch the provider call; yields the mock so tests can count calls or fail it."""
    with patch(
        "lorebase.ingest.embedding_client.litellm.embedding", side_effect=fake_embedding
    ) as mock:
        yield mock


@pytest.fixture
def reconciler(store, layout, config, fake_embed):
    rec = Reconciler(store, EmbeddingClient(config.embedding), layout, config)
    yield rec
    rec.close()


@pytest.fixture
def engine(config, fake_embed):
    eng = KnowledgeEngine(config).open()
    yield eng
    eng.close()


@pytest.fixture
def write_note():
    """Return a helper that writes a front-matter entry file and returns its path."""

    def _write(
        path: Path,
        entry_id: str,
        title: str,
        body: str = "",
        *,
        ghost: str = "alpha",
        trust: int = 5,
        **front: object,
    ) -> Path:
        data = {
            "id": entry_id,
            "title": title,
            "created_at": "2026-01-01T00:00:00Z",
            "trust_score": trust,
            "created_by": {"ghost": ghost, "model": "m1"},
        }
        data.update(front)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            f"---\n{yaml.safe_dump(data, sort_keys=False)}---\n{body}", encoding="utf-8"
        )
        return path

    return _write
