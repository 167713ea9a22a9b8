"""Exception taxonomy for the lorebase engine.

Reconciliation treats ParseFailure and EmbeddingUnavailable as per-file,
non-fatal conditions: they are recorded in the report and retried on the
next pass. Write operations raise ScopeViolation / WriteConflict /
UnknownEntry straight to the caller before anything is written.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class LorebaseError(Exception):
    """Base class for all lorebase errors."""


class ParseFailure(LorebaseError):
    """A file could not be parsed into an entry (malformed front matter)."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class EmbeddingUnavailable(LorebaseError):
    """The embedding provider is unreachable or returned an error."""


class EmbeddingDimensionMismatch(EmbeddingUnavailable):
    """Provider returned vectors whose width differs from the stored index."""

    def __init__(self, model: str, expected: int, got: int) -> None:
        self.model = model
        self.expected = expected
        self.got = got
        super().__init__(
            f"Embedding model '{model}' returned {got}-dim vectors; index holds {expected}-dim."
        )


class ScopeViolation(LorebaseError):
    """Owner/scope invariant broken, or a write targets another ghost's data."""


class WriteConflict(LorebaseError):
    """An update was based on a stale version of the entry.

    The rejected fields are kept on the exception so the caller can re-read
    the entry and re-apply them.
    """

    def __init__(
        self,
        entry_id: str,
        expected_version: int,
        current_version: int,
        rejected_fields: dict[str, Any],
        current: Any = None,
    ) -> None:
        self.entry_id = entry_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.rejected_fields = rejected_fields
        self.current = current
        super().__init__(
            f"Entry '{entry_id}' is at version {current_version}, "
            f"update was based on version {expected_version}. Re-read and retry."
        )


class CorruptIndex(LorebaseError):
    """The index disagrees with itself for one or more entries."""

    def __init__(self, entry_ids: list[str]) -> None:
        self.entry_ids = entry_ids
        super().__init__(f"Index inconsistency for {len(entry_ids)} entries")


class UnknownEntry(LorebaseError):
    """No entry visible to the caller matches the given key."""


class PathOutsideRoot(LorebaseError):
    """A path resolves outside of the data root."""
