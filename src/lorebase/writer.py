"""File placement and atomic writes for entries and reference files.

Every write goes to a hidden ``*.tmp`` file in the target directory and is
then renamed over the destination, so the reconciler and watcher only ever
see complete files (both skip ``*.tmp`` and hidden names).
"""

from __future__ import annotations

import os
import tempfile
from datetime import date
from pathlib import Path

from lorebase.errors import PathOutsideRoot
from lorebase.paths import slugify


# ------------------------------------------------------------------
# Placement
# ------------------------------------------------------------------


def note_path(notes_root: Path, title: str, tags: list[str], entry_id: str) -> Path:
    """Return ``<notes_root>/<first/tag/path>/<slug>.md`` for a new note.

    The first tag fixes the folder; later tag edits never move the file.
    A name already taken by another file gets the id prefix appended.
    """
    folder = notes_root
    if tags:
        for segment in tags[0].split("/"):
            folder = folder / slugify(segment, fallback="untagged")
    candidate = folder / f"{slugify(title)}.md"
    if candidate.exists():
        candidate = folder / f"{slugify(title)}-{entry_id[:8]}.md"
    return candidate


def diary_path(diary_root: Path, day: date) -> Path:
    return diary_root / f"{day.isoformat()}.md"


def confine_relative(base: Path, rel_path: str) -> Path:
    """Join *rel_path* onto *base* and refuse anything that escapes it.

    Raises:
        PathOutsideRoot: If *rel_path* is absolute or climbs out of *base*.
    """
    if Path(rel_path).is_absolute():
        raise PathOutsideRoot(f"'{rel_path}' must be relative to '{base}'")
    base = base.resolve()
    resolved = (base / rel_path).resolve()
    try:
        resolved.relative_to(base)
    except ValueError:
        raise PathOutsideRoot(
            f"Path '{rel_path}' resolves outside '{base}'. Path traversal is not permitted."
        ) from None
    if resolved == base:
        raise PathOutsideRoot(f"'{rel_path}' does not name a file inside '{base}'")
    return resolved


# ------------------------------------------------------------------
# Atomic write
# ------------------------------------------------------------------


def write_atomic(path: Path, content: str | bytes) -> None:
    """Write *content* to *path* atomically (temp → rename).

    Creates parent directories if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def move_into(src: Path, dest: Path) -> None:
    """Move a staged file into place, replacing *dest*.

    Same-filesystem moves are a single rename; otherwise the bytes are
    written atomically and the source removed.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(src, dest)
    except OSError:
        write_atomic(dest, src.read_bytes())
        src.unlink()


def remove_file(path: Path) -> bool:
    """Delete *path* if present. Returns True if a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True

