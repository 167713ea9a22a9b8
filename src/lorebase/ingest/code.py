"""Code chunker: one chunk per top-level function/class-equivalent.

Python sources are split with the stdlib ``ast`` module. Other languages
use a per-language regex over top-level declaration lines. Files in an
unknown language, or that fail to parse, fall back to whole-file chunks.

Chunk titles are ``<kind>:<name>`` (e.g. ``function:load``, ``class:Store``);
text before the first unit becomes a ``module`` chunk.
"""

from __future__ import annotations

import ast
import re
from pathlib import Path

from lorebase.db.models import Chunk
from lorebase.ingest.base import BaseChunker

CODE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".py", ".rs", ".go", ".js", ".jsx", ".mjs", ".ts", ".tsx", ".java",
        ".c", ".h", ".cc", ".cpp", ".hpp", ".rb", ".sh", ".toml", ".json", ".yaml", ".yml",
    }
)

_DECL_PATTERNS: dict[str, re.Pattern[str]] = {
    ".rs": re.compile(
        r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+|unsafe\s+|const\s+)*"
        r"(?P<kind>fn|struct|enum|trait|impl|mod)\b\s*(?:<[^>]*>\s*)?(?P<name>[A-Za-z_][\w:]*)?"
    ),
    ".go": re.compile(
        r"^(?P<kind>func|type)\s+(?:\([^)]*\)\s*)?(?P<name>[A-Za-z_]\w*)"
    ),
    ".js": re.compile(
        r"^(?:export\s+(?:default\s+)?)?(?:async\s+)?"
        r"(?P<kind>function\*?|class)\s+(?P<name>[A-Za-z_$][\w$]*)"
    ),
    ".java": re.compile(
        r"^(?:(?:public|protected|private|abstract|final|static)\s+)*"
        r"(?P<kind>class|interface|enum|record)\s+(?P<name>[A-Za-z_]\w*)"
    ),
    ".c": re.compile(
        r"^(?!\s)(?!(?:if|for|while|switch|return)\b)[\w\s\*]+?\b(?P<name>[A-Za-z_]\w*)\s*\([^;]*$"
    ),
}
_DECL_PATTERNS[".jsx"] = _DECL_PATTERNS[".js"]
_DECL_PATTERNS[".mjs"] = _DECL_PATTERNS[".js"]
_DECL_PATTERNS[".ts"] = _DECL_PATTERNS[".js"]
_DECL_PATTERNS[".tsx"] = _DECL_PATTERNS[".js"]
for _ext in (".h", ".cc", ".cpp", ".hpp"):
    _DECL_PATTERNS[_ext] = _DECL_PATTERNS[".c"]


def is_code_path(path: str | Path) -> bool:
    return Path(path).suffix.lower() in CODE_EXTENSIONS


class CodeChunker(BaseChunker):
    """Split source files on syntactic unit boundaries."""

    def chunk(
        self, entry_id: str, content: str, path: str = "", title: str = ""
    ) -> list[Chunk]:
        if not content.strip():
            return []

        suffix = Path(path).suffix.lower()
        units: list[tuple[str, str]] | None = None
        if suffix == ".py":
            units = self._python_units(content)
        elif suffix in _DECL_PATTERNS:
            units = self._regex_units(content, _DECL_PATTERNS[suffix])

        if not units:
            name = Path(path).name or title or "file"
            units = [(f"file:{name}", content.strip())]

        pieces: list[tuple[str, str]] = []
        for unit_title, text in units:
            pieces.extend(self._split_oversized(unit_title, text))
        return self._make_chunks(entry_id, [p for p in pieces if p[1].strip()])

    # ------------------------------------------------------------------
    # Python
    # ------------------------------------------------------------------

    def _python_units(self, content: str) -> list[tuple[str, str]] | None:
        """Top-level defs/classes via ``ast``. None on syntax error."""
        try:
            tree = ast.parse(content)
        except (SyntaxError, ValueError):
            return None

        lines = content.splitlines()
        spans: list[tuple[int, int, str]] = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kind = "function"
            elif isinstance(node, ast.ClassDef):
                kind = "class"
            else:
                continue
            start = min([node.lineno] + [d.lineno for d in node.decorator_list])
            end = node.end_lineno or node.lineno
            spans.append((start, end, f"{kind}:{node.name}"))

        if not spans:
            return None
        # Module-level code between units stays with the unit above it.
        spans = [
            (start, (spans[i + 1][0] - 1) if i + 1 < len(spans) else len(lines), label)
            for i, (start, _end, label) in enumerate(spans)
        ]
        return _slice_units(lines, spans)

    # ------------------------------------------------------------------
    # Regex languages
    # ------------------------------------------------------------------

    def _regex_units(self, content: str, pattern: re.Pattern[str]) -> list[tuple[str, str]] | None:
        """Each top-level declaration runs until the next one starts."""
        lines = content.splitlines()
        starts: list[tuple[int, str]] = []
        for lineno, line in enumerate(lines, start=1):
            match = pattern.match(line)
            if not match:
                continue
            groups = match.groupdict()
            kind = (groups.get("kind") or "function").rstrip("*")
            name = groups.get("name") or "anonymous"
            starts.append((lineno, f"{kind}:{name}"))

        if not starts:
            return None
        spans = [
            (start, (starts[i + 1][0] - 1) if i + 1 < len(starts) else len(lines), label)
            for i, (start, label) in enumerate(starts)
        ]
        return _slice_units(lines, spans)


def _slice_units(lines: list[str], spans: list[tuple[int, int, str]]) -> list[tuple[str, str]]:
    """Cut *lines* into ``(title, text)`` units from 1-based inclusive spans.

    Text before the first span is kept as a ``module`` unit.
    """
    units: list[tuple[str, str]] = []
    head = "\n".join(lines[: spans[0][0] - 1]).strip()
    if head:
        units.append(("module", head))
    for start, end, label in spans:
        text = "\n".join(lines[start - 1 : end]).strip()
        if text:
            units.append((label, text))
    return units
