"""Base chunker interface for every entry kind."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

from lorebase.db.models import Chunk


def chunk_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()`` and may use ``_split_fixed_window()``
    and ``_make_chunks()`` for the fixed-window fallback path.

    Token counting uses a 4-chars-per-token approximation; no external
    tokenizer dependency is required.
    """

    def __init__(self, chunk_size: int = 375, overlap: float = 0.10) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @abstractmethod
    def chunk(
        self, entry_id: str, content: str, path: str = "", title: str = ""
    ) -> list[Chunk]:
        """Split *content* into Chunk objects for *entry_id*.

        Args:
            entry_id: ID of the parent entry.
            content: Entry body (front matter already removed).
            path: Original file path (used for titles / language detection).
            title: Entry title, used for text that sits under no heading.

        Returns:
            Ordered list of Chunk objects with sequential ``chunk_index``.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def _split_fixed_window(self, text: str) -> list[str]:
        """Split *text* into fixed-window segments with overlap.

        Window size = ``self.chunk_size * 4`` characters.
        Overlap     = ``self.overlap`` fraction of window size.
        Segments are stripped; empty segments are omitted.
        """
        if not text.strip():
            return []

        char_size = self.chunk_size * 4
        overlap_chars = int(char_size * self.overlap)
        step = max(1, char_size - overlap_chars)

        segments: list[str] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + char_size, length)
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            pos += step

        return segments

    def _split_oversized(self, title: str, text: str) -> list[tuple[str, str]]:
        """Return ``[(title, text)]``, windowing *text* if it exceeds chunk_size."""
        if self.count_tokens(text) <= self.chunk_size:
            return [(title, text)]
        return [(title, part) for part in self._split_fixed_window(text)]

    @staticmethod
    def _make_chunks(entry_id: str, sections: list[tuple[str, str]]) -> list[Chunk]:
        """Convert ``(title, text)`` pairs into sequentially indexed Chunks."""
        return [
            Chunk(
                entry_id=entry_id,
                chunk_index=i,
                title=title,
                content=text,
                content_hash=chunk_hash(text),
            )
            for i, (title, text) in enumerate(sections)
        ]
