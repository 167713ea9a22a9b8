"""Repository pattern for all lorebase index operations.

Single interface for: entries, tags, chunks, FTS5 search, vec embeddings,
links, reference topics/files, rejections and meta bookkeeping.
Vec tables are model-managed (ensure_vec_table); repository handles read + write.

Methods never commit. Callers group writes inside IndexStore.transaction()
so an entry and everything hanging off it change together.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Sequence

from lorebase.db.models import (
    Archetype,
    Chunk,
    Entry,
    EntryType,
    Link,
    ReferenceFile,
    Scope,
)

_ENTRY_COLUMNS = (
    "id, title, entry_type, archetype, scope, owner, path, parent_id, trust_score, "
    "version, created_at, created_by_ghost, created_by_model, last_validated_at, "
    "last_validated_by_ghost, last_validated_by_model, comments_json, content_hash, updated_at"
)

_CHUNK_COLUMNS = (
    "id, entry_id, chunk_index, title, content, content_hash, embedding_model, embedded_hash"
)


class Repository:
    """Data access layer for all lorebase index entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    (normally IndexStore) and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see lorebase.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def upsert_entry(self, entry: Entry) -> None:
        """Insert *entry* or replace every column of the existing row."""
        self._conn.execute(
            f"""
            INSERT INTO entries ({_ENTRY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                entry_type = excluded.entry_type,
                archetype = excluded.archetype,
                scope = excluded.scope,
                owner = excluded.owner,
                path = excluded.path,
                parent_id = excluded.parent_id,
                trust_score = excluded.trust_score,
                version = excluded.version,
                created_at = excluded.created_at,
                created_by_ghost = excluded.created_by_ghost,
                created_by_model = excluded.created_by_model,
                last_validated_at = excluded.last_validated_at,
                last_validated_by_ghost = excluded.last_validated_by_ghost,
                last_validated_by_model = excluded.last_validated_by_model,
                comments_json = excluded.comments_json,
                content_hash = excluded.content_hash,
                updated_at = excluded.updated_at
            """,
            (
                entry.id,
                entry.title,
                entry.entry_type.value,
                entry.archetype.value if entry.archetype else None,
                entry.scope.value,
                entry.owner,
                entry.path,
                entry.parent_id,
                entry.trust_score,
                entry.version,
                entry.created_at,
                entry.created_by_ghost,
                entry.created_by_model,
                entry.last_validated_at,
                entry.last_validated_by_ghost,
                entry.last_validated_by_model,
                json.dumps(entry.comments),
                entry.content_hash,
                entry.updated_at,
            ),
        )

    def get_entry(self, entry_id: str) -> Entry | None:
        """Return an entry (with tags) by ID, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            return None
        entry = _row_to_entry(row)
        entry.tags = self.get_tags(entry.id)
        return entry

    def get_entry_by_path(self, path: str) -> Entry | None:
        """Return the entry indexed from *path*, or None."""
        row = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE path = ?", (path,)
        ).fetchone()
        if row is None:
            return None
        entry = _row_to_entry(row)
        entry.tags = self.get_tags(entry.id)
        return entry

    def find_entries_by_title(self, title: str) -> list[Entry]:
        """Return every entry whose title matches exactly (tags not loaded)."""
        rows = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE title = ? ORDER BY id", (title,)
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def entries_under(self, prefix: str) -> list[tuple[str, str]]:
        """Return ``(id, path)`` for every entry whose path starts with *prefix*."""
        rows = self._conn.execute(
            "SELECT id, path FROM entries WHERE substr(path, 1, ?) = ? ORDER BY path",
            (len(prefix), prefix),
        ).fetchall()
        return [(r["id"], r["path"]) for r in rows]

    def visible_ids(
        self, entry_ids: Sequence[str], where: str, params: Sequence[object]
    ) -> set[str]:
        """The subset of *entry_ids* matching *where* (a predicate over alias ``e``)."""
        if not entry_ids:
            return set()
        placeholders = ",".join("?" * len(entry_ids))
        rows = self._conn.execute(
            f"SELECT e.id FROM entries e WHERE e.id IN ({placeholders}) AND {where}",
            (*entry_ids, *params),
        ).fetchall()
        return {r[0] for r in rows}

    def list_entry_ids(self) -> list[str]:
        return [r[0] for r in self._conn.execute("SELECT id FROM entries ORDER BY id")]

    def list_children(self, parent_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT id FROM entries WHERE parent_id = ? ORDER BY id", (parent_id,)
        ).fetchall()
        return [r[0] for r in rows]

    def delete_entry(self, entry_id: str) -> None:
        """Delete an entry and everything derived from it.

        Chunks, tags, outgoing links and reference metadata cascade through
        foreign keys; FTS and vec rows are removed explicitly. Inbound links
        are kept and become unresolved.
        """
        self.delete_chunks(entry_id)
        self._conn.execute(
            "UPDATE links SET target_id = NULL WHERE target_id = ?", (entry_id,)
        )
        self._conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def get_tags(self, entry_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT tag FROM entry_tags WHERE entry_id = ? ORDER BY tag", (entry_id,)
        ).fetchall()
        return [r[0] for r in rows]

    def replace_tags(self, entry_id: str, tags: Iterable[str]) -> None:
        self._conn.execute("DELETE FROM entry_tags WHERE entry_id = ?", (entry_id,))
        self._conn.executemany(
            "INSERT OR IGNORE INTO entry_tags (entry_id, tag) VALUES (?, ?)",
            [(entry_id, t) for t in tags],
        )

    def tag_siblings(
        self, entry_id: str, where: str, params: Sequence[object], limit: int
    ) -> list[str]:
        """Entries sharing at least one tag with *entry_id*, most shared first.

        *where* is a SQL predicate over alias ``e`` (entries) restricting
        which siblings are visible.
        """
        rows = self._conn.execute(
            f"""
            SELECT e.id, COUNT(*) AS shared
            FROM entry_tags mine
            JOIN entry_tags other ON other.tag = mine.tag AND other.entry_id != mine.entry_id
            JOIN entries e ON e.id = other.entry_id
            WHERE mine.entry_id = ? AND {where}
            GROUP BY e.id
            ORDER BY shared DESC, e.trust_score DESC, e.id
            LIMIT ?
            """,
            (entry_id, *params, limit),
        ).fetchall()
        return [r["id"] for r in rows]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def get_chunks(self, entry_id: str) -> list[Chunk]:
        """Return all chunks of *entry_id* ordered by chunk_index."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE entry_id = ? ORDER BY chunk_index",
            (entry_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def insert_chunk(self, chunk: Chunk) -> int:
        """Insert *chunk* and return its new id. FTS is synced separately."""
        cur = self._conn.execute(
            """
            INSERT INTO chunks
                (entry_id, chunk_index, title, content, content_hash, embedding_model, embedded_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.entry_id,
                chunk.chunk_index,
                chunk.title,
                chunk.content,
                chunk.content_hash,
                chunk.embedding_model,
                chunk.embedded_hash,
            ),
        )
        chunk.id = cur.lastrowid
        return chunk.id

    def update_chunk(self, chunk: Chunk) -> None:
        """Rewrite every column of an existing chunk row (matched by id)."""
        self._conn.execute(
            """
            UPDATE chunks SET chunk_index = ?, title = ?, content = ?, content_hash = ?,
                embedding_model = ?, embedded_hash = ?
            WHERE id = ?
            """,
            (
                chunk.chunk_index,
                chunk.title,
                chunk.content,
                chunk.content_hash,
                chunk.embedding_model,
                chunk.embedded_hash,
                chunk.id,
            ),
        )

    def delete_chunk_ids(self, chunk_ids: Sequence[int]) -> None:
        """Delete chunks + their FTS and vec rows."""
        if not chunk_ids:
            return
        placeholders = ",".join("?" * len(chunk_ids))
        self._conn.execute(
            f"DELETE FROM chunk_fts WHERE rowid IN ({placeholders})", list(chunk_ids)
        )
        for table in self.list_vec_tables():
            self._conn.execute(
                f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                list(chunk_ids),
            )
        self._conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", list(chunk_ids))

    def delete_chunks(self, entry_id: str) -> None:
        """Delete chunks + FTS + vec rows for an entry (cascade not available on FTS)."""
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE entry_id = ?", (entry_id,)
            ).fetchall()
        ]
        self.delete_chunk_ids(ids)

    def pending_chunks(self, model: str, limit: int = -1) -> list[Chunk]:
        """Chunks with no vector for *model* or a vector of older content."""
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS} FROM chunks
            WHERE embedded_hash IS NULL
               OR embedded_hash != content_hash
               OR embedding_model IS NULL
               OR embedding_model != ?
            ORDER BY id
            LIMIT ?
            """,
            (model, limit),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_pending_chunks(self, model: str) -> int:
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM chunks
            WHERE embedded_hash IS NULL OR embedded_hash != content_hash
               OR embedding_model IS NULL OR embedding_model != ?
            """,
            (model,),
        ).fetchone()[0]

    def mark_chunk_embedded(self, chunk_id: int, model: str, embedded_hash: str) -> None:
        self._conn.execute(
            "UPDATE chunks SET embedding_model = ?, embedded_hash = ? WHERE id = ?",
            (model, embedded_hash, chunk_id),
        )

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def index_chunk_text(self, chunk: Chunk, entry: Entry) -> None:
        """Insert the FTS row for *chunk* with explicit rowid = chunk id."""
        self._conn.execute(
            """
            INSERT INTO chunk_fts (rowid, content, title, entry_title, entry_type, archetype, tags)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.id,
                chunk.content,
                chunk.title,
                entry.title,
                entry.entry_type.value,
                entry.archetype.value if entry.archetype else "",
                " ".join(entry.tags),
            ),
        )

    def unindex_chunk_text(self, chunk_ids: Sequence[int]) -> None:
        if not chunk_ids:
            return
        placeholders = ",".join("?" * len(chunk_ids))
        self._conn.execute(
            f"DELETE FROM chunk_fts WHERE rowid IN ({placeholders})", list(chunk_ids)
        )

    def search_fts(
        self, fts_query: str, where: str, params: Sequence[object], limit: int
    ) -> list[sqlite3.Row]:
        """BM25 search over chunk_fts restricted by *where* (alias ``e``).

        bm25() returns negative values; lower (more negative) = better match.
        Rows carry ``chunk_id``, ``entry_id`` and ``score``.
        """
        return self._conn.execute(
            f"""
            SELECT c.id AS chunk_id, c.entry_id AS entry_id, bm25(chunk_fts) AS score
            FROM chunk_fts
            JOIN chunks c ON c.id = chunk_fts.rowid
            JOIN entries e ON e.id = c.entry_id
            WHERE chunk_fts MATCH ? AND {where}
            ORDER BY score, c.id
            LIMIT ?
            """,
            (fts_query, *params, limit),
        ).fetchall()

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def list_vec_tables(self) -> list[str]:
        """Return vec0 tables (not their shadow tables)."""
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type='table' AND name LIKE 'vec_chunks_%' AND sql LIKE 'CREATE VIRTUAL TABLE%'"
            " ORDER BY name"
        ).fetchall()
        return [r[0] for r in rows]

    def put_embedding(self, table: str, chunk_id: int, embedding: list[float]) -> None:
        """Store an embedding with explicit rowid = chunk id, replacing any prior vector."""
        self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (chunk_id,))
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (chunk_id, json.dumps(embedding)),
        )

    def has_embedding(self, table: str, chunk_id: int) -> bool:
        row = self._conn.execute(
            f"SELECT rowid FROM {table} WHERE rowid = ?", (chunk_id,)
        ).fetchone()
        return row is not None

    def count_embeddings(self, table: str) -> int:
        return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def search_vec(
        self,
        table: str,
        embedding: list[float],
        where: str,
        params: Sequence[object],
        k: int,
        limit: int,
    ) -> list[sqlite3.Row]:
        """Nearest-neighbour search, over-fetching *k* then filtering by *where*.

        Rows carry ``chunk_id``, ``entry_id`` and ``distance`` sorted nearest-first.
        """
        return self._conn.execute(
            f"""
            WITH knn AS (
                SELECT rowid, distance FROM {table}
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT c.id AS chunk_id, c.entry_id AS entry_id, knn.distance AS distance
            FROM knn
            JOIN chunks c ON c.id = knn.rowid
            JOIN entries e ON e.id = c.entry_id
            WHERE {where}
            ORDER BY knn.distance, c.id
            LIMIT ?
            """,
            (json.dumps(embedding), k, *params, limit),
        ).fetchall()

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def replace_links(self, source_id: str, links: Iterable[Link]) -> None:
        self._conn.execute("DELETE FROM links WHERE source_id = ?", (source_id,))
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO links (source_id, target_title, alias, target_id)
            VALUES (?, ?, ?, ?)
            """,
            [(source_id, l.target_title, l.alias, l.target_id) for l in links],
        )

    def get_links_out(self, source_id: str) -> list[Link]:
        rows = self._conn.execute(
            "SELECT source_id, target_title, alias, target_id FROM links "
            "WHERE source_id = ? ORDER BY target_title, alias",
            (source_id,),
        ).fetchall()
        return [_row_to_link(r) for r in rows]

    def get_links_in(self, target_id: str) -> list[Link]:
        rows = self._conn.execute(
            "SELECT source_id, target_title, alias, target_id FROM links "
            "WHERE target_id = ? ORDER BY source_id",
            (target_id,),
        ).fetchall()
        return [_row_to_link(r) for r in rows]

    def links_to_titles(self, titles: Iterable[str]) -> list[Link]:
        """All links (from any source) whose target_title is in *titles*."""
        titles = list(dict.fromkeys(titles))
        if not titles:
            return []
        placeholders = ",".join("?" * len(titles))
        rows = self._conn.execute(
            f"SELECT source_id, target_title, alias, target_id FROM links "
            f"WHERE target_title IN ({placeholders}) ORDER BY source_id",
            titles,
        ).fetchall()
        return [_row_to_link(r) for r in rows]

    def set_link_target(self, link: Link, target_id: str | None) -> bool:
        """Point *link* at *target_id*. Returns True if the row changed."""
        cur = self._conn.execute(
            """
            UPDATE links SET target_id = ?
            WHERE source_id = ? AND target_title = ? AND alias = ?
              AND target_id IS NOT ?
            """,
            (target_id, link.source_id, link.target_title, link.alias, target_id),
        )
        return cur.rowcount > 0

    def entry_owner(self, entry_id: str) -> tuple[bool, str | None]:
        """Return ``(exists, owner)`` for *entry_id*."""
        row = self._conn.execute(
            "SELECT owner FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return (row is not None, row["owner"] if row else None)

    # ------------------------------------------------------------------
    # Reference topics and files
    # ------------------------------------------------------------------

    def upsert_topic(
        self, topic_id: str, files: list[dict], max_age_days: int, fetched_at: str | None
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO reference_topics (topic_id, files_json, max_age_days, fetched_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(topic_id) DO UPDATE SET
                files_json = excluded.files_json,
                max_age_days = excluded.max_age_days,
                fetched_at = excluded.fetched_at
            """,
            (topic_id, json.dumps(files, sort_keys=True), max_age_days, fetched_at),
        )

    def get_topic(self, topic_id: str) -> dict | None:
        """Return ``{files, max_age_days, fetched_at}`` for a topic, or None."""
        row = self._conn.execute(
            "SELECT files_json, max_age_days, fetched_at FROM reference_topics WHERE topic_id = ?",
            (topic_id,),
        ).fetchone()
        if row is None:
            return None
        return {
            "files": json.loads(row["files_json"]),
            "max_age_days": row["max_age_days"],
            "fetched_at": row["fetched_at"],
        }

    def get_topic_files(self, topic_id: str) -> list[dict] | None:
        """Return the stored member file listings for a topic, or None if unknown."""
        row = self._conn.execute(
            "SELECT files_json FROM reference_topics WHERE topic_id = ?", (topic_id,)
        ).fetchone()
        return json.loads(row["files_json"]) if row else None

    def upsert_reference_file(self, ref: ReferenceFile) -> None:
        self._conn.execute(
            """
            INSERT INTO reference_files
                (entry_id, topic_id, path, role, status, source_url, source_type,
                 fetched_at, max_age_days)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(entry_id) DO UPDATE SET
                topic_id = excluded.topic_id,
                path = excluded.path,
                role = excluded.role,
                status = excluded.status,
                source_url = excluded.source_url,
                source_type = excluded.source_type,
                fetched_at = excluded.fetched_at,
                max_age_days = excluded.max_age_days
            """,
            (
                ref.entry_id,
                ref.topic_id,
                ref.path,
                ref.role,
                ref.status,
                ref.source_url,
                ref.source_type,
                ref.fetched_at,
                ref.max_age_days,
            ),
        )

    def get_reference_file(self, entry_id: str) -> ReferenceFile | None:
        row = self._conn.execute(
            "SELECT * FROM reference_files WHERE entry_id = ?", (entry_id,)
        ).fetchone()
        return _row_to_reference_file(row) if row else None

    def list_reference_files(self, topic_id: str) -> list[ReferenceFile]:
        rows = self._conn.execute(
            "SELECT * FROM reference_files WHERE topic_id = ? ORDER BY path", (topic_id,)
        ).fetchall()
        return [_row_to_reference_file(r) for r in rows]

    def list_topics(self) -> list[Entry]:
        """Every indexed reference topic (tags loaded), ordered by title."""
        rows = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE entry_type = ? ORDER BY title, id",
            (EntryType.REFERENCE_TOPIC.value,),
        ).fetchall()
        topics = [_row_to_entry(r) for r in rows]
        for topic in topics:
            topic.tags = self.get_tags(topic.id)
        return topics

    def reference_statuses(self, entry_ids: Sequence[str]) -> dict[str, str]:
        """Map each reference member among *entry_ids* to its status."""
        if not entry_ids:
            return {}
        placeholders = ",".join("?" * len(entry_ids))
        rows = self._conn.execute(
            f"SELECT entry_id, status FROM reference_files WHERE entry_id IN ({placeholders})",
            tuple(entry_ids),
        ).fetchall()
        return {r["entry_id"]: r["status"] for r in rows}

    def find_reference_members(self, topic_title: str, path: str) -> list[Entry]:
        """Entries for member *path* of any topic titled *topic_title*."""
        rows = self._conn.execute(
            f"""
            SELECT {', '.join('e.' + c.strip() for c in _ENTRY_COLUMNS.split(','))}
            FROM reference_files rf
            JOIN entries e ON e.id = rf.entry_id
            JOIN entries t ON t.id = rf.topic_id
            WHERE t.title = ? AND rf.path = ?
            ORDER BY e.id
            """,
            (topic_title, path),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Rejections
    # ------------------------------------------------------------------

    def get_rejection(self, path: str) -> tuple[str, str] | None:
        """Return ``(content_hash, reason)`` for a rejected path, or None."""
        row = self._conn.execute(
            "SELECT content_hash, reason FROM rejections WHERE path = ?", (path,)
        ).fetchone()
        return (row["content_hash"], row["reason"]) if row else None

    def record_rejection(self, path: str, content_hash: str, reason: str, at: str) -> None:
        self._conn.execute(
            """
            INSERT INTO rejections (path, content_hash, reason, rejected_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                content_hash = excluded.content_hash,
                reason = excluded.reason,
                rejected_at = excluded.rejected_at
            """,
            (path, content_hash, reason, at),
        )

    def clear_rejection(self, path: str) -> bool:
        cur = self._conn.execute("DELETE FROM rejections WHERE path = ?", (path,))
        return cur.rowcount > 0

    def list_rejections(self) -> list[tuple[str, str]]:
        rows = self._conn.execute(
            "SELECT path, reason FROM rejections ORDER BY path"
        ).fetchall()
        return [(r["path"], r["reason"]) for r in rows]

    def rejections_under(self, prefix: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT path FROM rejections WHERE substr(path, 1, ?) = ?",
            (len(prefix), prefix),
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    # ------------------------------------------------------------------
    # Stats + integrity
    # ------------------------------------------------------------------

    def count_by_scope(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT scope, COUNT(*) AS n FROM entries GROUP BY scope ORDER BY scope"
        ).fetchall()
        return {r["scope"]: r["n"] for r in rows}

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def count_unresolved_links(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM links WHERE target_id IS NULL"
        ).fetchone()[0]

    def orphan_chunk_entries(self) -> list[str]:
        """Entry ids referenced by chunks whose entry row is missing."""
        rows = self._conn.execute(
            """
            SELECT DISTINCT c.entry_id FROM chunks c
            LEFT JOIN entries e ON e.id = c.entry_id
            WHERE e.id IS NULL
            """
        ).fetchall()
        return [r[0] for r in rows]

    def entries_with_fts_drift(self) -> list[str]:
        """Entries whose chunks lack an FTS row."""
        rows = self._conn.execute(
            """
            SELECT DISTINCT c.entry_id FROM chunks c
            LEFT JOIN chunk_fts f ON f.rowid = c.id
            WHERE f.rowid IS NULL
            """
        ).fetchall()
        return [r[0] for r in rows]

    def stray_fts_rowids(self) -> list[int]:
        rows = self._conn.execute(
            """
            SELECT f.rowid FROM chunk_fts f
            LEFT JOIN chunks c ON c.id = f.rowid
            WHERE c.id IS NULL
            """
        ).fetchall()
        return [r[0] for r in rows]

    def entries_missing_vectors(self, table: str, model: str) -> list[str]:
        """Entries with a chunk marked embedded for *model* but no row in *table*."""
        rows = self._conn.execute(
            f"""
            SELECT DISTINCT c.entry_id FROM chunks c
            LEFT JOIN {table} v ON v.rowid = c.id
            WHERE c.embedding_model = ? AND c.embedded_hash IS NOT NULL AND v.rowid IS NULL
            """,
            (model,),
        ).fetchall()
        return [r[0] for r in rows]

    def stray_vec_rowids(self, table: str) -> list[int]:
        rows = self._conn.execute(
            f"""
            SELECT v.rowid FROM {table} v
            LEFT JOIN chunks c ON c.id = v.rowid
            WHERE c.id IS NULL
            """
        ).fetchall()
        return [r[0] for r in rows]

    def delete_vec_rowids(self, table: str, rowids: Sequence[int]) -> None:
        if not rowids:
            return
        placeholders = ",".join("?" * len(rowids))
        self._conn.execute(
            f"DELETE FROM {table} WHERE rowid IN ({placeholders})", list(rowids)
        )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _archetype_or_none(value: str | None) -> Archetype | None:
    if not value:
        return None
    try:
        return Archetype(value)
    except ValueError:
        return None


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        title=row["title"],
        entry_type=EntryType(row["entry_type"]),
        archetype=_archetype_or_none(row["archetype"]),
        scope=Scope(row["scope"]),
        owner=row["owner"],
        path=row["path"],
        parent_id=row["parent_id"],
        trust_score=row["trust_score"],
        version=row["version"],
        created_at=row["created_at"],
        created_by_ghost=row["created_by_ghost"],
        created_by_model=row["created_by_model"],
        last_validated_at=row["last_validated_at"],
        last_validated_by_ghost=row["last_validated_by_ghost"],
        last_validated_by_model=row["last_validated_by_model"],
        comments=json.loads(row["comments_json"] or "[]"),
        content_hash=row["content_hash"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        entry_id=row["entry_id"],
        chunk_index=row["chunk_index"],
        title=row["title"],
        content=row["content"],
        content_hash=row["content_hash"],
        embedding_model=row["embedding_model"],
        embedded_hash=row["embedded_hash"],
    )


def _row_to_link(row: sqlite3.Row) -> Link:
    return Link(
        source_id=row["source_id"],
        target_title=row["target_title"],
        alias=row["alias"],
        target_id=row["target_id"],
    )


def _row_to_reference_file(row: sqlite3.Row) -> ReferenceFile:
    return ReferenceFile(
        topic_id=row["topic_id"],
        entry_id=row["entry_id"],
        path=row["path"],
        role=row["role"],
        status=row["status"],
        source_url=row["source_url"],
        source_type=row["source_type"],
        fetched_at=row["fetched_at"],
        max_age_days=row["max_age_days"],
    )
