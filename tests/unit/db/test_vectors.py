"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import json

import pytest

from lorebase.db.vectors import (
    ensure_vec_table,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)


@pytest.mark.parametrize("model,expected", [
    ("ollama/qwen3-embedding:8b", "ollama_qwen3_embedding_8b"),
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    assert vec_table_name("ollama_test") == "vec_chunks_ollama_test"


def test_ensure_vec_table_creates_once(tmp_db):
    slug = model_to_slug("ollama/test-embed")
    assert not vec_table_exists(tmp_db, vec_table_name(slug))
    first = ensure_vec_table(tmp_db, slug, dimensions=4)
    second = ensure_vec_table(tmp_db, slug, dimensions=4)
    assert first == second == "vec_chunks_ollama_test_embed"
    assert vec_table_exists(tmp_db, first)


def test_cosine_nearest_neighbour(tmp_db):
    table = ensure_vec_table(tmp_db, "ollama_test", dimensions=3)
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (1, ?)", (json.dumps([1, 0, 0]),))
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (2, ?)", (json.dumps([0, 1, 0]),))
    row = tmp_db.execute(
        f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = 1",
        (json.dumps([0.1, 0.9, 0]),),
    ).fetchone()
    assert row[0] == 2
    assert row[1] < 0.1


def test_invalid_slug(tmp_db):
    with pytest.raises(ValueError, match="model_slug"):
        ensure_vec_table(tmp_db, "bad/slug!", dimensions=8)


def test_invalid_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_table(tmp_db, "ollama_test", dimensions=0)
