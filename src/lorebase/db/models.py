"""Domain models for the lorebase index layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from lorebase.errors import ScopeViolation


class Scope(str, Enum):
    SHARED_NOTE = "shared_note"
    SHARED_REFERENCE = "shared_reference"
    GHOST_NOTE = "ghost_note"
    GHOST_REFERENCE = "ghost_reference"
    GHOST_DIARY = "ghost_diary"

    @property
    def is_shared(self) -> bool:
        return self in (Scope.SHARED_NOTE, Scope.SHARED_REFERENCE)

    @property
    def is_reference(self) -> bool:
        return self in (Scope.SHARED_REFERENCE, Scope.GHOST_REFERENCE)


SHARED_SCOPES: tuple[Scope, ...] = (Scope.SHARED_NOTE, Scope.SHARED_REFERENCE)
GHOST_SCOPES: tuple[Scope, ...] = (Scope.GHOST_NOTE, Scope.GHOST_REFERENCE, Scope.GHOST_DIARY)


class EntryType(str, Enum):
    NOTE = "Note"
    REFERENCE_TOPIC = "ReferenceTopic"
    REFERENCE_DOCS = "ReferenceDocs"
    REFERENCE_CODE = "ReferenceCode"
    DIARY = "Diary"


class Archetype(str, Enum):
    PERSON = "person"
    CONCEPT = "concept"
    DECISION = "decision"
    EVENT = "event"
    PLACE = "place"
    PROJECT = "project"
    ORGANIZATION = "organization"
    PROCEDURE = "procedure"
    MEDIA = "media"
    QUOTE = "quote"


class Category(str, Enum):
    """Coarse search filter over scopes."""

    NOTES = "notes"
    REFERENCES = "references"
    DIARY = "diary"

    def scopes(self) -> tuple[Scope, ...]:
        if self is Category.NOTES:
            return (Scope.SHARED_NOTE, Scope.GHOST_NOTE)
        if self is Category.REFERENCES:
            return (Scope.SHARED_REFERENCE, Scope.GHOST_REFERENCE)
        return (Scope.GHOST_DIARY,)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Render *value* as an ISO-8601 UTC string with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Entry:
    id: str
    title: str
    entry_type: EntryType
    scope: Scope
    path: str
    content_hash: str
    trust_score: int
    created_at: str
    created_by_ghost: str
    created_by_model: str
    owner: str | None = None
    archetype: Archetype | None = None
    parent_id: str | None = None
    version: int = 1
    updated_at: str | None = None
    last_validated_at: str | None = None
    last_validated_by_ghost: str | None = None
    last_validated_by_model: str | None = None
    comments: list[dict] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def check_scope(self) -> None:
        """Raise ScopeViolation unless owner is set exactly for ghost scopes."""
        if self.scope.is_shared and self.owner is not None:
            raise ScopeViolation(
                f"Entry '{self.id}' is {self.scope.value} but has owner '{self.owner}'"
            )
        if not self.scope.is_shared and not self.owner:
            raise ScopeViolation(f"Entry '{self.id}' is {self.scope.value} but has no owner")
        if (self.entry_type is EntryType.DIARY) != (self.scope is Scope.GHOST_DIARY):
            raise ScopeViolation(
                f"Entry '{self.id}' of type {self.entry_type.value} cannot live in {self.scope.value}"
            )


@dataclass
class Chunk:
    entry_id: str
    chunk_index: int
    title: str
    content: str
    content_hash: str = ""
    embedding_model: str | None = None
    embedded_hash: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def needs_embedding(self) -> bool:
        return self.embedded_hash is None or self.embedded_hash != self.content_hash


@dataclass
class Link:
    source_id: str
    target_title: str
    alias: str = ""
    target_id: str | None = None


@dataclass
class ReferenceFile:
    topic_id: str
    entry_id: str
    path: str
    role: str = "docs"
    status: str = "active"
    source_url: str | None = None
    source_type: str | None = None
    fetched_at: str | None = None
    max_age_days: int = 0

    def is_stale(self, now: datetime | None = None) -> bool:
        """A file is stale when it is older than *max_age_days*. 0 disables."""
        if not self.fetched_at or self.max_age_days <= 0:
            return False
        now = now or utc_now()
        return now - parse_ts(self.fetched_at) > timedelta(days=self.max_age_days)
