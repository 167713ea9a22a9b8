"""Chunker selection for an entry."""

from __future__ import annotations

from lorebase.config import ChunkingCfg
from lorebase.db.models import Chunk, EntryType
from lorebase.ingest.base import BaseChunker, chunk_hash
from lorebase.ingest.code import CodeChunker
from lorebase.ingest.markdown import MarkdownChunker


def chunker_for(entry_type: EntryType, cfg: ChunkingCfg) -> BaseChunker:
    if entry_type is EntryType.REFERENCE_CODE:
        return CodeChunker(chunk_size=cfg.chunk_size, overlap=cfg.overlap)
    return MarkdownChunker(
        chunk_size=cfg.chunk_size,
        overlap=cfg.overlap,
        min_section_chars=cfg.min_section_chars,
    )


def chunk_entry(
    entry_id: str,
    entry_type: EntryType,
    title: str,
    body: str,
    path: str,
    cfg: ChunkingCfg,
) -> list[Chunk]:
    """Chunk an entry body.

    Bodies shorter than ``cfg.single_chunk_chars`` always yield exactly one
    chunk. An empty body still yields one chunk carrying the title, so every
    entry stays reachable by lexical search.
    """
    text = body.strip()
    if len(text) < cfg.single_chunk_chars:
        content = text or title
        return [
            Chunk(
                entry_id=entry_id,
                chunk_index=0,
                title=title,
                content=content,
                content_hash=chunk_hash(content),
            )
        ]
    return chunker_for(entry_type, cfg).chunk(entry_id, text, path=path, title=title)
