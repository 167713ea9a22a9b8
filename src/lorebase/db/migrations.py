"""Forward-only migration runner for the lorebase index schema.

Vec tables (vec_chunks_*) are created on demand by ensure_vec_table(), not by migrations.
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS entries (
    id                      TEXT PRIMARY KEY,
    title                   TEXT NOT NULL,
    entry_type              TEXT NOT NULL,
    archetype               TEXT,
    scope                   TEXT NOT NULL,
    owner                   TEXT,
    path                    TEXT NOT NULL UNIQUE,
    parent_id               TEXT,
    trust_score             INTEGER NOT NULL CHECK (trust_score BETWEEN 0 AND 10),
    version                 INTEGER NOT NULL DEFAULT 1,
    created_at              TEXT NOT NULL,
    created_by_ghost        TEXT NOT NULL,
    created_by_model        TEXT NOT NULL,
    last_validated_at       TEXT,
    last_validated_by_ghost TEXT,
    last_validated_by_model TEXT,
    comments_json           TEXT NOT NULL DEFAULT '[]',
    content_hash            TEXT NOT NULL,
    updated_at              TEXT NOT NULL,
    CHECK (
        (scope IN ('shared_note', 'shared_reference') AND owner IS NULL)
        OR (scope IN ('ghost_note', 'ghost_reference', 'ghost_diary') AND owner IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_entries_title ON entries(title);
CREATE INDEX IF NOT EXISTS idx_entries_owner ON entries(owner);
CREATE INDEX IF NOT EXISTS idx_entries_parent ON entries(parent_id);

CREATE TABLE IF NOT EXISTS entry_tags (
    entry_id    TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    tag         TEXT NOT NULL,
    PRIMARY KEY (entry_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_entry_tags_tag ON entry_tags(tag);

CREATE TABLE IF NOT EXISTS links (
    source_id       TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    target_title    TEXT NOT NULL,
    alias           TEXT NOT NULL DEFAULT '',
    target_id       TEXT,
    PRIMARY KEY (source_id, target_title, alias)
);

CREATE INDEX IF NOT EXISTS idx_links_target_title ON links(target_title);
CREATE INDEX IF NOT EXISTS idx_links_target_id ON links(target_id);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id        TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    chunk_index     INTEGER NOT NULL,
    title           TEXT NOT NULL,
    content         TEXT NOT NULL,
    content_hash    TEXT NOT NULL,
    embedding_model TEXT,
    embedded_hash   TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunks_entry ON chunks(entry_id);

-- Rows are inserted explicitly (rowid = chunks.id) by the repository.
CREATE VIRTUAL TABLE IF NOT EXISTS chunk_fts USING fts5(
    content, title, entry_title, entry_type, archetype, tags,
    tokenize='porter unicode61'
);

CREATE TABLE IF NOT EXISTS reference_topics (
    topic_id        TEXT PRIMARY KEY REFERENCES entries(id) ON DELETE CASCADE,
    files_json      TEXT NOT NULL DEFAULT '[]',
    max_age_days    INTEGER NOT NULL DEFAULT 0,
    fetched_at      TEXT
);

CREATE TABLE IF NOT EXISTS reference_files (
    entry_id        TEXT PRIMARY KEY REFERENCES entries(id) ON DELETE CASCADE,
    topic_id        TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    path            TEXT NOT NULL,
    role            TEXT NOT NULL DEFAULT 'docs',
    status          TEXT NOT NULL DEFAULT 'active',
    source_url      TEXT,
    source_type     TEXT,
    fetched_at      TEXT,
    max_age_days    INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_reference_files_topic ON reference_files(topic_id);

CREATE TABLE IF NOT EXISTS rejections (
    path            TEXT PRIMARY KEY,
    content_hash    TEXT NOT NULL,
    reason          TEXT NOT NULL,
    rejected_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are left to ensure_vec_table().
    """
    conn.execute(_CREATE_SCHEMA_VERSION)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
