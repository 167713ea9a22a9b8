"""lorebase index database layer."""

from lorebase.db.connection import Database
from lorebase.db.migrations import MIGRATIONS, run_migrations
from lorebase.db.schema import initialize
from lorebase.db.store import IndexStats, IndexStore
from lorebase.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "IndexStats",
    "IndexStore",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
