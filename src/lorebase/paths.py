"""On-disk layout of the knowledge tree.

    <data_root>/
      shared/notes/**.md
      shared/references/<topic>/topic.md (+ member files)
      shared/inbox/                      (staging, never indexed)
      ghosts/<ghost>/notes/<first/tag>/<slug>.md
      ghosts/<ghost>/references/<topic>/...
      ghosts/<ghost>/diary/YYYY-MM-DD.md
      ghosts/<ghost>/inbox/
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from lorebase.db.models import Scope
from lorebase.errors import PathOutsideRoot

ARCHIVE_DIR = ".archive"
TOPIC_FILE = "topic.md"

_GHOST_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class RootKind(str, Enum):
    NOTES = "notes"
    REFERENCES = "references"
    DIARY = "diary"


@dataclass(frozen=True)
class ScopeRoot:
    """One directory the reconciler walks, with the scope its files get."""

    scope: Scope
    owner: str | None
    path: Path

    @property
    def kind(self) -> RootKind:
        if self.scope is Scope.GHOST_DIARY:
            return RootKind.DIARY
        if self.scope.is_reference:
            return RootKind.REFERENCES
        return RootKind.NOTES

    @property
    def label(self) -> str:
        return f"{self.owner}:{self.kind.value}" if self.owner else f"shared:{self.kind.value}"


def validate_ghost_name(name: str) -> str:
    if not _GHOST_NAME_RE.match(name):
        raise ValueError(f"Invalid ghost name '{name}'")
    return name


def slugify(text: str, fallback: str = "entry") -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:80] or fallback


class Layout:
    """Paths for every scope under *data_root*."""

    def __init__(self, data_root: Path | str) -> None:
        self.data_root = Path(data_root).expanduser().resolve()

    # shared
    @property
    def shared_dir(self) -> Path:
        return self.data_root / "shared"

    @property
    def shared_notes(self) -> Path:
        return self.shared_dir / "notes"

    @property
    def shared_references(self) -> Path:
        return self.shared_dir / "references"

    @property
    def shared_inbox(self) -> Path:
        return self.shared_dir / "inbox"

    # ghosts
    @property
    def ghosts_dir(self) -> Path:
        return self.data_root / "ghosts"

    def ghost_dir(self, ghost: str) -> Path:
        return self.ghosts_dir / validate_ghost_name(ghost)

    def ghost_notes(self, ghost: str) -> Path:
        return self.ghost_dir(ghost) / "notes"

    def ghost_references(self, ghost: str) -> Path:
        return self.ghost_dir(ghost) / "references"

    def ghost_diary(self, ghost: str) -> Path:
        return self.ghost_dir(ghost) / "diary"

    def ghost_inbox(self, ghost: str) -> Path:
        return self.ghost_dir(ghost) / "inbox"

    def inbox(self, ghost: str | None) -> Path:
        return self.ghost_inbox(ghost) if ghost else self.shared_inbox

    def list_ghosts(self) -> list[str]:
        if not self.ghosts_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.ghosts_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".") and _GHOST_NAME_RE.match(p.name)
        )

    # roots
    def shared_roots(self) -> list[ScopeRoot]:
        return [
            ScopeRoot(Scope.SHARED_NOTE, None, self.shared_notes),
            ScopeRoot(Scope.SHARED_REFERENCE, None, self.shared_references),
        ]

    def ghost_roots(self, ghost: str) -> list[ScopeRoot]:
        return [
            ScopeRoot(Scope.GHOST_NOTE, ghost, self.ghost_notes(ghost)),
            ScopeRoot(Scope.GHOST_REFERENCE, ghost, self.ghost_references(ghost)),
            ScopeRoot(Scope.GHOST_DIARY, ghost, self.ghost_diary(ghost)),
        ]

    def all_roots(self) -> list[ScopeRoot]:
        roots = self.shared_roots()
        for ghost in self.list_ghosts():
            roots.extend(self.ghost_roots(ghost))
        return roots

    def root_for(self, scope: Scope, owner: str | None) -> ScopeRoot:
        for root in self.shared_roots() if owner is None else self.ghost_roots(owner):
            if root.scope is scope:
                return root
        raise ValueError(f"No root for scope {scope.value} with owner {owner!r}")

    def root_of(self, path: Path | str) -> ScopeRoot | None:
        """Return the scope root containing *path*, or None (inbox, index, stray)."""
        path = Path(path).resolve()
        candidates = self.shared_roots()
        try:
            rel = path.relative_to(self.ghosts_dir)
        except ValueError:
            rel = None
        if rel is not None and rel.parts and _GHOST_NAME_RE.match(rel.parts[0]):
            candidates = self.ghost_roots(rel.parts[0])
        for root in candidates:
            if path == root.path or root.path in path.parents:
                return root
        return None

    def ensure(self, ghost: str | None = None) -> None:
        """Create the directory skeleton for the shared scope and *ghost*."""
        for root in self.shared_roots():
            root.path.mkdir(parents=True, exist_ok=True)
        self.shared_inbox.mkdir(parents=True, exist_ok=True)
        if ghost:
            for root in self.ghost_roots(ghost):
                root.path.mkdir(parents=True, exist_ok=True)
            self.ghost_inbox(ghost).mkdir(parents=True, exist_ok=True)

    def confine(self, path: Path | str, base: Path | None = None) -> Path:
        """Resolve *path* and refuse anything outside *base* (default data_root).

        Raises:
            PathOutsideRoot: If the resolved path escapes *base*.
        """
        base = (base or self.data_root).resolve()
        candidate = Path(path)
        resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
        try:
            resolved.relative_to(base)
        except ValueError:
            raise PathOutsideRoot(
                f"Path '{path}' resolves outside '{base}'. Path traversal is not permitted."
            ) from None
        return resolved


def is_skipped(rel_path: Path) -> bool:
    """Hidden files, archive folders and temp files are never indexed.

    *rel_path* must be relative to its scope root.
    """
    return any(
        part == ARCHIVE_DIR or part.startswith(".") for part in rel_path.parts
    ) or rel_path.suffix == ".tmp"
