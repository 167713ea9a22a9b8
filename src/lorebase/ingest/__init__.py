"""lorebase ingest pipeline: parser, chunkers, embedding client, reconciler."""

from lorebase.ingest.base import BaseChunker
from lorebase.ingest.code import CodeChunker
from lorebase.ingest.markdown import MarkdownChunker
from lorebase.ingest.parser import ParsedEntry, parse_diary, parse_entry

__all__ = [
    "BaseChunker",
    "CodeChunker",
    "MarkdownChunker",
    "ParsedEntry",
    "parse_diary",
    "parse_entry",
]
