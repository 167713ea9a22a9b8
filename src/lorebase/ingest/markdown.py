"""Markdown chunker: heading-aware splits with small-section merging."""

from __future__ import annotations

import re

from lorebase.db.models import Chunk
from lorebase.ingest.base import BaseChunker

# Matches H1-H6 headings at the start of a line.
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$")
_FENCE_RE = re.compile(r"^[ \t]*(```|~~~)")


class MarkdownChunker(BaseChunker):
    """Split Markdown on heading boundaries.

    Strategy:
    - Every heading (H1-H6, outside fenced code) opens a *section*; the
      chunk title is the heading text.
    - Content before the first heading becomes a section titled with the
      entry title.
    - A section shorter than ``min_section_chars`` is merged into the
      section that follows it.
    - Sections that exceed ``chunk_size`` tokens are further split with
      ``_split_fixed_window()``.
    - A document without headings falls back to fixed-window splitting.
    """

    def __init__(
        self, chunk_size: int = 375, overlap: float = 0.10, min_section_chars: int = 200
    ) -> None:
        super().__init__(chunk_size=chunk_size, overlap=overlap)
        self.min_section_chars = min_section_chars

    def chunk(
        self, entry_id: str, content: str, path: str = "", title: str = ""
    ) -> list[Chunk]:
        if not content.strip():
            return []

        fallback_title = title or "Intro"
        sections = self._split_on_headings(content, fallback_title)
        if not sections:
            return self._make_chunks(
                entry_id, [(fallback_title, t) for t in self._split_fixed_window(content)]
            )

        pieces: list[tuple[str, str]] = []
        for section_title, text in self._merge_small(sections):
            pieces.extend(self._split_oversized(section_title, text))
        return self._make_chunks(entry_id, [p for p in pieces if p[1].strip()])

    def _split_on_headings(self, content: str, fallback_title: str) -> list[tuple[str, str]]:
        """Split *content* into ``(title, text)`` sections.

        Returns an empty list if no headings are found (signals fallback).
        """
        sections: list[tuple[str, list[str]]] = [(fallback_title, [])]
        in_fence = False
        found = False

        for line in content.splitlines():
            if _FENCE_RE.match(line):
                in_fence = not in_fence
            match = None if in_fence else _HEADING_RE.match(line)
            if match:
                found = True
                sections.append((match.group(2).strip(), [line]))
            else:
                sections[-1][1].append(line)

        if not found:
            return []

        result: list[tuple[str, str]] = []
        for section_title, lines in sections:
            text = "\n".join(lines).strip()
            if text:
                result.append((section_title, text))
        return result

    def _merge_small(self, sections: list[tuple[str, str]]) -> list[tuple[str, str]]:
        """Merge each too-small section forward into the next one."""
        merged: list[tuple[str, str]] = []
        carry: tuple[str, str] | None = None
        for section_title, text in sections:
            if carry is not None:
                section_title, text = carry[0], f"{carry[1]}\n\n{text}"
                carry = None
            if len(text) < self.min_section_chars:
                carry = (section_title, text)
            else:
                merged.append((section_title, text))
        if carry is not None:
            merged.append(carry)
        return merged
