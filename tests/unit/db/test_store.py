"""Tests for IndexStore: lifecycle, transactions, vectors and integrity checks."""

from __future__ import annotations

import threading

import pytest

from lorebase.db.models import Chunk, Entry, EntryType, Scope
from lorebase.db.store import IndexStore
from lorebase.errors import EmbeddingDimensionMismatch, LorebaseError

MODEL = "ollama/test-embed"


def _entry(id="e1"):
    return Entry(
        id=id,
        title=id.upper(),
        entry_type=EntryType.NOTE,
        scope=Scope.SHARED_NOTE,
        path=f"/data/{id}.md",
        content_hash="h",
        trust_score=5,
        created_at="2026-01-01T00:00:00Z",
        created_by_ghost="alpha",
        created_by_model="m1",
        updated_at="2026-01-01T00:00:00Z",
    )


def _add_entry_with_chunk(store: IndexStore, entry_id="e1", vector=True) -> Chunk:
    with store.transaction() as repo:
        entry = _entry(entry_id)
        repo.upsert_entry(entry)
        chunk = Chunk(entry_id=entry_id, chunk_index=0, title="", content="body", content_hash="c")
        repo.insert_chunk(chunk)
        repo.index_chunk_text(chunk, entry)
        if vector:
            table = store.ensure_vectors(repo, 3)
            repo.put_embedding(table, chunk.id, [0.1, 0.2, 0.3])
            repo.mark_chunk_embedded(chunk.id, MODEL, chunk.content_hash)
    return chunk


def test_connection_requires_open(tmp_path):
    store = IndexStore(tmp_path / "index.sqlite3", MODEL)
    with pytest.raises(LorebaseError, match="not open"):
        store.connection()


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as repo:
            repo.upsert_entry(_entry())
            raise RuntimeError("boom")
    assert store.repository().get_entry("e1") is None


def test_transaction_commits(store):
    with store.transaction() as repo:
        repo.upsert_entry(_entry())
    assert store.repository().get_entry("e1") is not None


def test_each_thread_gets_own_connection(store):
    main = store.connection()
    seen = []
    t = threading.Thread(target=lambda: seen.append(store.connection()))
    t.start()
    t.join()
    assert seen and seen[0] is not main


def test_ensure_vectors_records_dimensions(store):
    _add_entry_with_chunk(store)
    assert store.has_vectors()
    assert store.dimensions() == 3


def test_ensure_vectors_rejects_other_width(store):
    _add_entry_with_chunk(store)
    with pytest.raises(EmbeddingDimensionMismatch):
        with store.transaction() as repo:
            store.ensure_vectors(repo, 4)


def test_check_integrity_clean(store):
    _add_entry_with_chunk(store)
    assert store.check_integrity() == []
    assert store.stray_rows() == {}


def test_check_integrity_reports_fts_drift(store):
    chunk = _add_entry_with_chunk(store)
    with store.transaction() as repo:
        repo.unindex_chunk_text([chunk.id])
    assert store.check_integrity() == ["e1"]


def test_check_integrity_reports_missing_vector(store):
    chunk = _add_entry_with_chunk(store)
    with store.transaction() as repo:
        repo.delete_vec_rowids(store.vec_table, [chunk.id])
    assert store.check_integrity() == ["e1"]


def test_purge_strays_removes_rows_without_chunks(store):
    chunk = _add_entry_with_chunk(store)
    conn = store.connection()
    conn.execute("DELETE FROM chunks WHERE id = ?", (chunk.id,))
    strays = store.stray_rows()
    assert strays == {"chunk_fts": [chunk.id], store.vec_table: [chunk.id]}

    assert store.purge_strays() == 2
    assert store.stray_rows() == {}
    assert store.purge_strays() == 0


def test_stats(store):
    _add_entry_with_chunk(store, "e1")
    _add_entry_with_chunk(store, "e2", vector=False)
    stats = store.stats()
    assert stats.entries_by_scope == {"shared_note": 2}
    assert stats.entries == 2
    assert stats.chunks == 2
    assert stats.pending_embeddings == 1
    assert stats.vec_table == store.vec_table
    assert stats.dimensions == 3
    assert stats.last_reconcile_at is None
