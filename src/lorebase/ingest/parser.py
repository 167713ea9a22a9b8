"""Entry parser: YAML front matter + markdown body → validated entry fields.

File format:

    ---
    id: 0b6f...
    title: Rust async
    created_at: 2026-01-01T00:00:00Z
    trust_score: 7
    created_by: {ghost: alpha, model: m1}
    tags: [rust/async]
    ---
    body...

Required: id, title, created_at, trust_score (0-10), created_by {ghost, model}.
Unknown keys are kept in ``FrontMatter.extra`` and written back by
render_entry() unchanged.

Diary files (``diary/YYYY-MM-DD.md``) need no front matter; their id is
derived from (owner, date) so re-indexing a date always hits the same entry.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from lorebase.db.models import Archetype, EntryType, format_ts, parse_ts
from lorebase.errors import ParseFailure

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_DIARY_NAME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.md$")

_DIARY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "lorebase:diary")
DEFAULT_TRUST_SCORE = 5

_KNOWN_KEYS = (
    "id",
    "title",
    "entry_type",
    "type",
    "archetype",
    "created_at",
    "created_by",
    "trust_score",
    "version",
    "tags",
    "parent",
    "last_validated_at",
    "last_validated_by",
    "source",
    "comments",
    "files",
    "max_age_days",
    "fetched_at",
    "sources",
)


@dataclass
class FrontMatter:
    id: str
    title: str
    created_at: str
    trust_score: int
    created_by_ghost: str
    created_by_model: str
    entry_type: EntryType | None = None
    archetype: Archetype | None = None
    tags: list[str] = field(default_factory=list)
    parent: str | None = None
    version: int = 1
    last_validated_at: str | None = None
    last_validated_by_ghost: str | None = None
    last_validated_by_model: str | None = None
    source: list[Any] = field(default_factory=list)
    comments: list[dict] = field(default_factory=list)
    # Reference topic descriptor fields
    files: list[Any] = field(default_factory=list)
    max_age_days: int = 0
    fetched_at: str | None = None
    sources: list[dict] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable mapping in a stable key order (extra keys last)."""
        data: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.entry_type is not None:
            data["entry_type"] = self.entry_type.value
        if self.archetype is not None:
            data["archetype"] = self.archetype.value
        data["created_at"] = self.created_at
        data["created_by"] = {"ghost": self.created_by_ghost, "model": self.created_by_model}
        data["trust_score"] = self.trust_score
        data["version"] = self.version
        if self.tags:
            data["tags"] = list(self.tags)
        if self.parent:
            data["parent"] = self.parent
        if self.last_validated_at:
            data["last_validated_at"] = self.last_validated_at
            data["last_validated_by"] = {
                "ghost": self.last_validated_by_ghost,
                "model": self.last_validated_by_model,
            }
        if self.source:
            data["source"] = self.source
        if self.comments:
            data["comments"] = self.comments
        if self.files:
            data["files"] = self.files
        if self.max_age_days:
            data["max_age_days"] = self.max_age_days
        if self.fetched_at:
            data["fetched_at"] = self.fetched_at
        if self.sources:
            data["sources"] = self.sources
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data


@dataclass
class ParsedEntry:
    front: FrontMatter
    body: str
    content_hash: str
    warnings: list[str] = field(default_factory=list)


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------


def content_hash(raw: bytes) -> str:
    """sha256 hex digest of raw file bytes."""
    return hashlib.sha256(raw).hexdigest()


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Return ``(yaml_block, body)``; yaml_block is None when absent."""
    text = text.lstrip("\ufeff")
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), text[match.end():]


def parse_entry(raw: bytes, path: Path | str) -> ParsedEntry:
    """Parse a front-matter entry file.

    Raises:
        ParseFailure: If the file is not UTF-8, has no front matter, or a
            required field is missing or ill-typed.
    """
    text = _decode(raw, path)
    block, body = split_front_matter(text)
    if block is None:
        raise ParseFailure(path, "missing front matter block")
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        raise ParseFailure(path, f"invalid YAML front matter: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseFailure(path, "front matter is not a mapping")

    warnings: list[str] = []
    front = _build_front_matter(data, path, warnings)
    for message in warnings:
        logger.warning("%s: %s", path, message)
    return ParsedEntry(front=front, body=body, content_hash=content_hash(raw), warnings=warnings)


def diary_date(path: Path | str) -> date | None:
    """Return the calendar date a diary filename encodes, or None."""
    match = _DIARY_NAME_RE.match(Path(path).name)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def diary_entry_id(owner: str, day: date) -> str:
    return str(uuid.uuid5(_DIARY_NAMESPACE, f"{owner}/{day.isoformat()}"))


def parse_diary(raw: bytes, path: Path | str, owner: str) -> ParsedEntry:
    """Parse a diary file. The filename supplies the date; front matter is optional.

    Raises:
        ParseFailure: If the filename is not ``YYYY-MM-DD.md`` or not UTF-8.
    """
    day = diary_date(path)
    if day is None:
        raise ParseFailure(path, "diary file name must be YYYY-MM-DD.md")
    text = _decode(raw, path)
    _, body = split_front_matter(text)
    midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    front = FrontMatter(
        id=diary_entry_id(owner, day),
        title=day.isoformat(),
        created_at=format_ts(midnight),
        trust_score=DEFAULT_TRUST_SCORE,
        created_by_ghost=owner,
        created_by_model="diary",
        entry_type=EntryType.DIARY,
    )
    return ParsedEntry(front=front, body=body, content_hash=content_hash(raw))


def render_entry(front: FrontMatter, body: str) -> str:
    """Serialise *front* + *body* back into the on-disk file format."""
    block = yaml.safe_dump(
        front.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
    )
    if body and not body.startswith("\n"):
        body = "\n" + body
    if body and not body.endswith("\n"):
        body += "\n"
    return f"---\n{block}---\n{body}"


def normalize_tag(tag: str) -> str:
    """Lowercase, trim, and collapse empty slash segments."""
    parts = [p.strip() for p in str(tag).strip().lower().split("/")]
    return "/".join(p for p in parts if p)


def normalize_tags(tags: list[Any]) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags:
        norm = normalize_tag(tag)
        if norm:
            seen.setdefault(norm, None)
    return list(seen)


def parse_archetype(value: Any, warnings: list[str]) -> Archetype | None:
    """Closed-set archetype; unknown values become None with a warning."""
    if value is None or value == "":
        return None
    try:
        return Archetype(str(value).strip().lower())
    except ValueError:
        warnings.append(f"unknown archetype '{value}' ignored")
        return None


# ------------------------------------------------------------------
# Field validation
# ------------------------------------------------------------------


def _decode(raw: bytes, path: Path | str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseFailure(path, f"not valid UTF-8: {exc}") from exc


def _required_str(data: dict, key: str, path: Path | str) -> str:
    value = data.get(key)
    if value is None:
        raise ParseFailure(path, f"missing required field '{key}'")
    if isinstance(value, (dict, list, bool)):
        raise ParseFailure(path, f"field '{key}' must be a string")
    text = str(value).strip()
    if not text:
        raise ParseFailure(path, f"field '{key}' must not be empty")
    return text


def coerce_timestamp(value: Any, key: str, path: Path | str) -> str:
    """Normalise a YAML date, datetime or ISO string to a UTC timestamp string."""
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, date):
        return format_ts(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
    if isinstance(value, str):
        try:
            return format_ts(parse_ts(value.strip()))
        except ValueError:
            pass
    raise ParseFailure(path, f"field '{key}' must be a timestamp, got {value!r}")


def _identity(value: Any, key: str, path: Path | str) -> tuple[str, str]:
    if not isinstance(value, dict):
        raise ParseFailure(path, f"field '{key}' must be a mapping with 'ghost' and 'model'")
    ghost = value.get("ghost")
    model = value.get("model")
    if not isinstance(ghost, str) or not ghost.strip():
        raise ParseFailure(path, f"field '{key}.ghost' must be a non-empty string")
    if not isinstance(model, str) or not model.strip():
        raise ParseFailure(path, f"field '{key}.model' must be a non-empty string")
    return ghost.strip(), model.strip()


def _entry_type(value: Any, path: Path | str) -> EntryType | None:
    if value is None:
        return None
    wanted = str(value).strip().lower()
    for member in EntryType:
        if member.value.lower() == wanted:
            return member
    raise ParseFailure(path, f"unknown entry_type '{value}'")


def _int_field(data: dict, key: str, default: int, path: Path | str, minimum: int = 0) -> int:
    value = data.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseFailure(path, f"field '{key}' must be an integer")
    if value < minimum:
        raise ParseFailure(path, f"field '{key}' must be >= {minimum}")
    return value


def _build_front_matter(data: dict, path: Path | str, warnings: list[str]) -> FrontMatter:
    entry_id = _required_str(data, "id", path)
    title = _required_str(data, "title", path)

    if "created_at" not in data:
        raise ParseFailure(path, "missing required field 'created_at'")
    created_at = coerce_timestamp(data["created_at"], "created_at", path)

    if "trust_score" not in data:
        raise ParseFailure(path, "missing required field 'trust_score'")
    trust = data["trust_score"]
    if isinstance(trust, bool) or not isinstance(trust, int) or not 0 <= trust <= 10:
        raise ParseFailure(path, f"field 'trust_score' must be an integer 0-10, got {trust!r}")

    if "created_by" not in data:
        raise ParseFailure(path, "missing required field 'created_by'")
    ghost, model = _identity(data["created_by"], "created_by", path)

    entry_type = _entry_type(data.get("entry_type", data.get("type")), path)
    archetype = parse_archetype(data.get("archetype"), warnings)
    if archetype is not None and entry_type not in (None, EntryType.NOTE):
        warnings.append(f"archetype '{archetype.value}' ignored on {entry_type.value}")
        archetype = None

    tags = data.get("tags") or []
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, list):
        raise ParseFailure(path, "field 'tags' must be a list of strings")

    parent = data.get("parent")
    if parent is not None and not isinstance(parent, str):
        raise ParseFailure(path, "field 'parent' must be an entry id string")

    validated_at = None
    validated_ghost = validated_model = None
    if data.get("last_validated_at") is not None:
        validated_at = coerce_timestamp(data["last_validated_at"], "last_validated_at", path)
        if data.get("last_validated_by") is not None:
            validated_ghost, validated_model = _identity(
                data["last_validated_by"], "last_validated_by", path
            )

    comments = data.get("comments") or []
    if not isinstance(comments, list):
        warnings.append("field 'comments' is not a list, ignored")
        comments = []

    fetched_at = None
    if data.get("fetched_at") is not None:
        fetched_at = coerce_timestamp(data["fetched_at"], "fetched_at", path)

    files = data.get("files") or []
    if not isinstance(files, list):
        raise ParseFailure(path, "field 'files' must be a list")
    sources = data.get("sources") or []
    if not isinstance(sources, list):
        raise ParseFailure(path, "field 'sources' must be a list")
    source = data.get("source") or []
    if not isinstance(source, list):
        source = [source]

    return FrontMatter(
        id=entry_id,
        title=title,
        created_at=created_at,
        trust_score=trust,
        created_by_ghost=ghost,
        created_by_model=model,
        entry_type=entry_type,
        archetype=archetype,
        tags=normalize_tags(tags),
        parent=parent.strip() if parent else None,
        version=_int_field(data, "version", 1, path, minimum=1),
        last_validated_at=validated_at,
        last_validated_by_ghost=validated_ghost,
        last_validated_by_model=validated_model,
        source=source,
        comments=[c for c in comments if isinstance(c, dict)],
        files=files,
        max_age_days=_int_field(data, "max_age_days", 0, path),
        fetched_at=fetched_at,
        sources=[s for s in sources if isinstance(s, dict)],
        extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
    )
