"""IndexStore: the single owned handle on the index database.

One store per process. It owns:
  - the open/close lifecycle of the SQLite file (schema applied on open)
  - one connection per thread (WAL lets readers run beside a writer)
  - the transaction boundary used for every per-entry write
  - the per-model vec table and its recorded dimension
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from lorebase.db.connection import Database
from lorebase.db.repository import Repository
from lorebase.db.schema import initialize
from lorebase.db.vectors import (
    ensure_vec_table,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)
from lorebase.errors import EmbeddingDimensionMismatch, LorebaseError

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    entries_by_scope: dict[str, int] = field(default_factory=dict)
    chunks: int = 0
    pending_embeddings: int = 0
    unresolved_links: int = 0
    rejections: int = 0
    vec_table: str | None = None
    dimensions: int | None = None
    last_reconcile_at: str | None = None

    @property
    def entries(self) -> int:
        return sum(self.entries_by_scope.values())


class IndexStore:
    """Thread-aware owner of the index database.

    Args:
        db_path: SQLite file path (created with parents if missing).
        embedding_model: Model whose vec table backs dense search.
    """

    def __init__(self, db_path: Path | str, embedding_model: str) -> None:
        self.db_path = Path(db_path)
        self.embedding_model = embedding_model
        self._slug = model_to_slug(embedding_model)
        self._db = Database(self.db_path)
        self._local = threading.local()
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> IndexStore:
        if self._open:
            return self
        conn = self._connect()
        initialize(conn)
        self._open = True
        logger.debug("Opened index %s", self.db_path)
        return self

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()
        self._open = False

    def __enter__(self) -> IndexStore:
        return self.open()

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    # ------------------------------------------------------------------
    # Connections + transactions
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._db.connect()
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection."""
        if not self._open:
            raise LorebaseError(f"Index store {self.db_path} is not open")
        return self._connect()

    def repository(self) -> Repository:
        """Read-side repository on this thread's connection."""
        return Repository(self.connection())

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Run the body as one ``BEGIN IMMEDIATE`` write transaction.

        Commits on success, rolls back on any exception. Not re-entrant.
        """
        conn = self.connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield Repository(conn)
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    @contextmanager
    def snapshot(self) -> Iterator[Repository]:
        """Run several reads against one consistent database snapshot."""
        conn = self.connection()
        conn.execute("BEGIN")
        try:
            yield Repository(conn)
        finally:
            conn.execute("COMMIT")

    def total_changes(self) -> int:
        """Rows changed through this thread's connection since it opened."""
        return self.connection().total_changes

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    @property
    def vec_table(self) -> str:
        return vec_table_name(self._slug)

    def has_vectors(self) -> bool:
        return vec_table_exists(self.connection(), self.vec_table)

    def dimensions(self, repo: Repository | None = None) -> int | None:
        repo = repo or self.repository()
        raw = repo.get_meta(f"embedding_dim:{self._slug}")
        return int(raw) if raw else None

    def ensure_vectors(self, repo: Repository, dimensions: int) -> str:
        """Create the vec table on first use and check later vectors fit it.

        Must be called inside a transaction (*repo* from transaction()).

        Raises:
            EmbeddingDimensionMismatch: If *dimensions* differs from the
                width recorded when the table was created.
        """
        known = self.dimensions(repo)
        if known is not None and known != dimensions:
            raise EmbeddingDimensionMismatch(self.embedding_model, known, dimensions)
        table = ensure_vec_table(repo.conn, self._slug, dimensions)
        if known is None:
            repo.set_meta(f"embedding_dim:{self._slug}", str(dimensions))
        return table

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def check_integrity(self) -> list[str]:
        """Return ids of entries whose derived rows disagree with each other.

        Covers chunks without an entry row, chunks without an FTS row, and
        chunks marked embedded whose vector is missing. Rows that belong to
        no chunk at all are reported by stray_rows().
        """
        with self.snapshot() as repo:
            ids = set(repo.orphan_chunk_entries())
            ids.update(repo.entries_with_fts_drift())
            if vec_table_exists(repo.conn, self.vec_table):
                ids.update(repo.entries_missing_vectors(self.vec_table, self.embedding_model))
            return sorted(ids)

    def stray_rows(self) -> dict[str, list[int]]:
        """FTS and vec rowids with no matching chunk, keyed by table."""
        with self.snapshot() as repo:
            strays = {"chunk_fts": repo.stray_fts_rowids()}
            for table in repo.list_vec_tables():
                strays[table] = repo.stray_vec_rowids(table)
            return {table: ids for table, ids in strays.items() if ids}

    def purge_strays(self) -> int:
        """Delete rows reported by stray_rows(). Returns the number removed."""
        strays = self.stray_rows()
        if not strays:
            return 0
        with self.transaction() as repo:
            for table, ids in strays.items():
                if table == "chunk_fts":
                    repo.unindex_chunk_text(ids)
                else:
                    repo.delete_vec_rowids(table, ids)
        removed = sum(len(ids) for ids in strays.values())
        logger.info("Removed %d stray index rows", removed)
        return removed

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> IndexStats:
        with self.snapshot() as repo:
            has_vec = vec_table_exists(repo.conn, self.vec_table)
            return IndexStats(
                entries_by_scope=repo.count_by_scope(),
                chunks=repo.count_chunks(),
                pending_embeddings=repo.count_pending_chunks(self.embedding_model),
                unresolved_links=repo.count_unresolved_links(),
                rejections=len(repo.list_rejections()),
                vec_table=self.vec_table if has_vec else None,
                dimensions=self.dimensions(repo),
                last_reconcile_at=repo.get_meta("last_reconcile_at"),
            )
