"""KnowledgeEngine: the tool interface over one corpus and its index.

search / get / write / reference_write are what agents call. Writes go to
the file first and are then indexed inline, so a successful write is
searchable as soon as it returns. Deletes run the other way round: the
index rows go first (one transaction), then the file.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import yaml

from lorebase.config import LorebaseConfig, load_config
from lorebase.db.models import (
    Archetype,
    Category,
    Entry,
    EntryType,
    Link,
    ReferenceFile,
    Scope,
    format_ts,
    utc_now,
)
from lorebase.db.repository import Repository
from lorebase.db.store import IndexStats, IndexStore
from lorebase.errors import LorebaseError, ScopeViolation, UnknownEntry, WriteConflict
from lorebase.ingest.code import is_code_path
from lorebase.ingest.embedding_client import EmbeddingClient
from lorebase.ingest.parser import (
    DEFAULT_TRUST_SCORE,
    FrontMatter,
    diary_entry_id,
    normalize_tags,
    parse_archetype,
    parse_entry,
    render_entry,
    split_front_matter,
)
from lorebase.ingest.reconciler import (
    REFERENCE_ROLES,
    REFERENCE_STATUSES,
    ReconcileReport,
    Reconciler,
    member_entry_id,
)
from lorebase.ingest.watcher import Watcher
from lorebase.paths import TOPIC_FILE, Layout, slugify
from lorebase.query.results import SearchRequest, SearchResult
from lorebase.query.retriever import search as run_search
from lorebase.writer import (
    confine_relative,
    diary_path,
    move_into,
    note_path,
    remove_file,
    write_atomic,
)

logger = logging.getLogger(__name__)

WRITE_ACTIONS = ("create", "update", "comment", "validate", "delete")
_SYSTEM_AUTHOR = "system"
_UNKNOWN_MODEL = "unknown"


@dataclass
class EntryDocument:
    """An entry as returned by get(): metadata, body and its graph neighbourhood."""

    entry: Entry
    body: str
    links_out: list[Link] = field(default_factory=list)
    links_in: list[Link] = field(default_factory=list)
    members: list[ReferenceFile] = field(default_factory=list)
    reference: ReferenceFile | None = None

    @property
    def stale(self) -> bool:
        return self.reference is not None and self.reference.is_stale()

    @property
    def stale_members(self) -> list[ReferenceFile]:
        now = utc_now()
        return [m for m in self.members if m.is_stale(now)]


@dataclass
class TopicSummary:
    """One row of topic_list()."""

    topic: Entry
    file_count: int
    obsolete: int = 0
    problematic: int = 0
    stale: int = 0

    @property
    def status(self) -> str:
        if self.file_count and self.obsolete == self.file_count:
            return "obsolete"
        if self.stale:
            return "stale"
        return "active"


class KnowledgeEngine:
    """Owns config, layout, index store, embedder and reconciler for one corpus.

    Args:
        config: Loaded configuration; load_config() when omitted.
        embedder: Embedding client override (tests pass a fake-backed one).
    """

    def __init__(
        self,
        config: LorebaseConfig | None = None,
        *,
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self.config = config or load_config()
        self.layout = Layout(self.config.paths.data_root)
        self.store = IndexStore(
            self.config.paths.resolved_index_path(), self.config.embedding.model
        )
        self.embedder = embedder or EmbeddingClient(self.config.embedding)
        self.reconciler = Reconciler(self.store, self.embedder, self.layout, self.config)
        self._watchers: list[Watcher] = []
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> KnowledgeEngine:
        self.layout.ensure()
        self.store.open()
        return self

    def close(self) -> None:
        for watcher in self._watchers:
            watcher.stop()
        self._watchers = []
        self.reconciler.close()
        self.store.close()

    def __enter__(self) -> KnowledgeEngine:
        return self.open()

    def __exit__(self, *args: object) -> None:
        self.close()

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        *,
        ghost: str | None = None,
        scopes: list[Scope] | None = None,
        category: Category | None = None,
        topic: str | None = None,
        archetype: Archetype | None = None,
        limit: int | None = None,
    ) -> SearchResult:
        request = SearchRequest(
            query=query,
            ghost=ghost,
            scopes=scopes,
            category=category,
            topic=topic,
            archetype=archetype,
            limit=limit,
        )
        return run_search(
            request, store=self.store, embedder=self.embedder, config=self.config.search
        )

    def get(self, key: str, *, ghost: str | None = None) -> EntryDocument:
        """Fetch an entry by id, title (own before shared) or ``<topic>/<file>``.

        Raises:
            UnknownEntry: If nothing visible to *ghost* matches *key*.
        """
        repo = self.store.repository()
        entry = _resolve(repo, key, ghost)
        return EntryDocument(
            entry=entry,
            body=_read_body(entry),
            links_out=repo.get_links_out(entry.id),
            links_in=[
                link
                for link in repo.get_links_in(entry.id)
                if _visible_owner(repo.entry_owner(link.source_id)[1], ghost)
            ],
            members=repo.list_reference_files(entry.id)
            if entry.entry_type is EntryType.REFERENCE_TOPIC
            else [],
            reference=repo.get_reference_file(entry.id),
        )

    def stats(self) -> IndexStats:
        return self.store.stats()

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def write(
        self, action: str, fields: dict[str, Any], *, ghost: str | None = None
    ) -> EntryDocument | None:
        """Apply a write action. Returns the resulting document (None for delete).

        Raises:
            ValueError: Unknown action or missing/invalid field.
            ScopeViolation: The caller may not write the target scope.
            UnknownEntry: The target entry is not visible to the caller.
            WriteConflict: ``expected_version`` is stale (update only).
        """
        handlers = {
            "create": self._create,
            "update": self._update,
            "comment": self._comment,
            "validate": self._validate,
            "delete": self._delete,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ValueError(
                f"Unknown write action '{action}'. Choose from: {', '.join(WRITE_ACTIONS)}"
            )
        return handler(dict(fields), ghost)

    def _create(self, fields: dict[str, Any], ghost: str | None) -> EntryDocument:
        scope = fields.get("scope", "shared")
        if scope == "diary":
            return self._write_diary(fields, ghost)
        if scope not in ("shared", "ghost"):
            raise ValueError(f"Unknown scope '{scope}'. Use shared, ghost or diary.")
        if scope == "ghost" and not ghost:
            raise ScopeViolation("A shared-only caller cannot write ghost scopes")
        owner = ghost if scope == "ghost" else None

        title = _required(fields, "title")
        tags = normalize_tags(_as_list(fields.get("tags")))
        parent = None
        if fields.get("parent"):
            parent = _resolve(self.store.repository(), str(fields["parent"]), ghost).id

        entry_id = str(uuid.uuid4())
        front = FrontMatter(
            id=entry_id,
            title=title,
            created_at=format_ts(utc_now()),
            trust_score=_trust(fields.get("trust_score", DEFAULT_TRUST_SCORE)),
            created_by_ghost=ghost or _SYSTEM_AUTHOR,
            created_by_model=fields.get("model") or _UNKNOWN_MODEL,
            entry_type=EntryType.NOTE,
            archetype=self._archetype(fields.get("archetype")),
            tags=tags,
            parent=parent,
        )
        notes_root = self.layout.ghost_notes(owner) if owner else self.layout.shared_notes
        path = note_path(notes_root, title, tags, entry_id)

        with self._lock(entry_id):
            write_atomic(path, render_entry(front, fields.get("body", "")))
            self._index(path)
        logger.info("Created %s at %s", entry_id, path)
        return self.get(entry_id, ghost=ghost)

    def _write_diary(self, fields: dict[str, Any], ghost: str | None) -> EntryDocument:
        if not ghost:
            raise ScopeViolation("Diary entries belong to a ghost; a shared caller has none")
        raw_day = fields.get("date")
        if raw_day is None:
            day = utc_now().date()
        elif isinstance(raw_day, date):
            day = raw_day
        else:
            day = date.fromisoformat(str(raw_day))

        self.layout.ensure(ghost)
        entry_id = diary_entry_id(ghost, day)
        path = diary_path(self.layout.ghost_diary(ghost), day)
        with self._lock(entry_id):
            write_atomic(path, fields.get("body", ""))
            self._index(path)
        return self.get(entry_id, ghost=ghost)

    def _update(self, fields: dict[str, Any], ghost: str | None) -> EntryDocument:
        entry_id = _required(fields, "id")
        with self._lock(entry_id):
            entry = self._writable(entry_id, ghost)
            path = Path(entry.path)
            if entry.entry_type is EntryType.DIARY:
                write_atomic(path, fields.get("body", ""))
                self._index(path)
                return self.get(entry_id, ghost=ghost)

            front, body = _load(path)
            expected = fields.get("expected_version")
            if expected is not None and int(expected) != front.version:
                raise WriteConflict(
                    entry_id,
                    int(expected),
                    front.version,
                    rejected_fields=fields,
                    current=self.get(entry_id, ghost=ghost),
                )

            if "title" in fields:
                front.title = _required(fields, "title")
            if "body" in fields:
                body = fields["body"] or ""
            if "tags" in fields:
                front.tags = normalize_tags(_as_list(fields["tags"]))
            if "archetype" in fields:
                front.archetype = self._archetype(fields["archetype"])
            if "trust_score" in fields:
                front.trust_score = _trust(fields["trust_score"])
            front.version += 1

            write_atomic(path, render_entry(front, body))
            self._index(path)
        return self.get(entry_id, ghost=ghost)

    def _comment(self, fields: dict[str, Any], ghost: str | None) -> EntryDocument:
        entry_id = _required(fields, "id")
        text = _required(fields, "text")
        with self._lock(entry_id):
            entry = self._writable(entry_id, ghost)
            path = Path(entry.path)
            front, body = _load(path)
            front.comments.append(
                {
                    "ghost": ghost or _SYSTEM_AUTHOR,
                    "model": fields.get("model") or _UNKNOWN_MODEL,
                    "at": format_ts(utc_now()),
                    "text": text,
                }
            )
            write_atomic(path, render_entry(front, body))
            self._index(path)
        return self.get(entry_id, ghost=ghost)

    def _validate(self, fields: dict[str, Any], ghost: str | None) -> EntryDocument:
        entry_id = _required(fields, "id")
        with self._lock(entry_id):
            entry = self._writable(entry_id, ghost)
            path = Path(entry.path)
            front, body = _load(path)
            front.last_validated_at = format_ts(utc_now())
            front.last_validated_by_ghost = ghost or _SYSTEM_AUTHOR
            front.last_validated_by_model = fields.get("model") or _UNKNOWN_MODEL
            if "trust_score" in fields:
                front.trust_score = _trust(fields["trust_score"])
            write_atomic(path, render_entry(front, body))
            self._index(path)
        return self.get(entry_id, ghost=ghost)

    def _delete(self, fields: dict[str, Any], ghost: str | None) -> None:
        entry_id = _required(fields, "id")
        with self._lock(entry_id):
            entry = self._visible_entry(entry_id, ghost)
            repo = self.store.repository()
            reference = repo.get_reference_file(entry.id)

            if entry.entry_type is EntryType.REFERENCE_TOPIC:
                for member in repo.list_reference_files(entry.id):
                    self.reconciler.forget(member.entry_id)
                self.reconciler.forget(entry.id)
                shutil.rmtree(Path(entry.path).parent)
            elif reference is not None:
                self._delete_member(entry, reference)
            else:
                self.reconciler.forget(entry.id)
                remove_file(Path(entry.path))
        logger.info("Deleted %s (%s)", entry.id, entry.path)
        return None

    def _delete_member(self, entry: Entry, reference: ReferenceFile) -> None:
        repo = self.store.repository()
        topic = repo.get_entry(reference.topic_id)
        self.reconciler.forget(entry.id)
        remove_file(Path(entry.path))
        if topic is None:
            return
        topic_file = Path(topic.path)
        with self._lock(f"topic:{topic_file}"):
            front, body = _load(topic_file)
            front.files = [f for f in front.files if _listing_path(f) != reference.path]
            write_atomic(topic_file, render_entry(front, body))
            self._index(topic_file)

    def reference_write(
        self,
        topic: str,
        filename: str,
        content: str | bytes | None = None,
        content_ref: str | None = None,
        *,
        source_url: str | None = None,
        source_type: str | None = None,
        role: str | None = None,
        max_age_days: int | None = None,
        ghost: str | None = None,
        model: str | None = None,
    ) -> ReferenceFile:
        """Add or replace a member file of a reference topic and index the topic.

        *content_ref* names a file inside the caller's ``inbox/`` that is
        moved into place instead of passing *content* inline.

        Raises:
            ValueError: Neither or both of content/content_ref, or a bad role.
            PathOutsideRoot: *filename* or *content_ref* escapes its directory.
        """
        if (content is None) == (content_ref is None):
            raise ValueError("Pass exactly one of content or content_ref")
        if role is not None and role not in REFERENCE_ROLES:
            raise ValueError(f"Unknown role '{role}'. Use one of: {', '.join(REFERENCE_ROLES)}")

        self.layout.ensure(ghost)
        refs_root = self.layout.ghost_references(ghost) if ghost else self.layout.shared_references
        topic_dir = confine_relative(refs_root, slugify(topic, fallback="topic"))
        dest = confine_relative(topic_dir, filename)
        rel = dest.relative_to(topic_dir).as_posix()
        if rel == TOPIC_FILE:
            raise ValueError(f"'{TOPIC_FILE}' is reserved for the topic descriptor")
        staged = confine_relative(self.layout.inbox(ghost), content_ref) if content_ref else None
        if staged is not None and not staged.is_file():
            raise FileNotFoundError(f"Staged file '{content_ref}' not found in inbox")

        topic_file = topic_dir / TOPIC_FILE
        with self._lock(f"topic:{topic_file}"):
            if topic_file.exists():
                front, body = _load(topic_file)
            else:
                front = FrontMatter(
                    id=str(uuid.uuid4()),
                    title=topic,
                    created_at=format_ts(utc_now()),
                    trust_score=DEFAULT_TRUST_SCORE,
                    created_by_ghost=ghost or _SYSTEM_AUTHOR,
                    created_by_model=model or _UNKNOWN_MODEL,
                    entry_type=EntryType.REFERENCE_TOPIC,
                )
                body = ""

            previous = next((f for f in front.files if _listing_path(f) == rel), None)
            listing: dict[str, Any] = {"status": "active", "source_type": "inline"}
            if isinstance(previous, dict):
                listing.update(previous)
            listing["path"] = rel
            listing["role"] = role or listing.get("role") or _infer_role(filename)
            listing["fetched_at"] = format_ts(utc_now())
            if source_type is not None:
                listing["source_type"] = source_type
            if source_url:
                listing["source_url"] = source_url
            if max_age_days is not None:
                listing["max_age_days"] = max_age_days
            front.files = [f for f in front.files if _listing_path(f) != rel] + [listing]

            if staged is not None:
                move_into(staged, dest)
            else:
                write_atomic(dest, content)
            write_atomic(topic_file, render_entry(front, body))
            self._index(topic_file)

        ref = self.store.repository().get_reference_file(member_entry_id(front.id, rel))
        if ref is None:
            raise LorebaseError(f"Reference file '{rel}' of topic '{topic}' was not indexed")
        return ref

    def reference_file_set_status(
        self,
        topic: str,
        path: str,
        status: str,
        reason: str | None = None,
        *,
        ghost: str | None = None,
    ) -> ReferenceFile:
        """Mark member *path* of *topic* active, problematic or obsolete.

        Obsolete files drop out of search; problematic ones rank at half
        their fused score. A *reason* is appended to the topic body as a
        quoted warning line.

        Raises:
            ValueError: Unknown *status*.
            UnknownEntry: No visible topic *topic*, or it lists no *path*.
        """
        if status not in REFERENCE_STATUSES:
            raise ValueError(
                f"Unknown status '{status}'. Use one of: {', '.join(REFERENCE_STATUSES)}"
            )
        topic_entry = self._topic_entry(topic, ghost)
        rel = path.strip()
        topic_file = Path(topic_entry.path)
        with self._lock(f"topic:{topic_file}"):
            front, body = _load(topic_file)
            index = next(
                (i for i, f in enumerate(front.files) if _listing_path(f) == rel), None
            )
            if index is None:
                raise UnknownEntry(f"Topic '{topic_entry.title}' lists no file '{rel}'")
            item = front.files[index]
            listing = dict(item) if isinstance(item, dict) else {"path": rel}
            listing["status"] = status
            front.files[index] = listing
            if reason:
                stamp = utc_now().date().isoformat()
                who = ghost or _SYSTEM_AUTHOR
                note = f"> **{status}** `{rel}` ({who}, {stamp}): {reason.strip()}"
                body = f"{body.rstrip()}\n\n{note}\n"
            write_atomic(topic_file, render_entry(front, body))
            self._index(topic_file)

        ref = self.store.repository().get_reference_file(member_entry_id(topic_entry.id, rel))
        if ref is None:
            raise LorebaseError(f"Reference file '{rel}' of topic '{topic}' was not indexed")
        logger.info("Marked %s/%s %s", topic_entry.title, rel, status)
        return ref

    def topic_list(
        self, include_obsolete: bool = False, *, ghost: str | None = None
    ) -> list[TopicSummary]:
        """Visible reference topics with member counts, by title.

        A topic whose every member is obsolete is left out unless
        *include_obsolete* is set.
        """
        repo = self.store.repository()
        now = utc_now()
        summaries: list[TopicSummary] = []
        for topic in repo.list_topics():
            if not _visible_owner(topic.owner, ghost):
                continue
            members = repo.list_reference_files(topic.id)
            summary = TopicSummary(
                topic=topic,
                file_count=len(members),
                obsolete=sum(m.status == "obsolete" for m in members),
                problematic=sum(m.status == "problematic" for m in members),
                stale=sum(m.status != "obsolete" and m.is_stale(now) for m in members),
            )
            if summary.status == "obsolete" and not include_obsolete:
                continue
            summaries.append(summary)
        return summaries

    def capture(self, text: str, *, ghost: str | None = None, source: str | None = None) -> Path:
        """Drop raw text into the caller's inbox. Inbox files are never indexed."""
        self.layout.ensure(ghost)
        now = utc_now()
        header = {"captured_at": format_ts(now)}
        if source:
            header["source"] = source
        first_line = text.strip().splitlines()[0] if text.strip() else "capture"
        path = self.layout.inbox(ghost) / (
            f"{now.strftime('%Y%m%dT%H%M%S')}-{slugify(first_line, fallback='capture')[:40]}.md"
        )
        block = yaml.safe_dump(header, sort_keys=False)
        write_atomic(path, f"---\n{block}---\n{text}")
        return path

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reconcile(self, ghost: str | None = None) -> ReconcileReport:
        return self.reconciler.reconcile_all(ghost)

    def repair(self, entry_ids: list[str] | None = None) -> ReconcileReport:
        return self.reconciler.repair(entry_ids)

    def watch(self) -> Watcher:
        watcher = Watcher(self.reconciler, self.layout, self.config.reconcile).start()
        self._watchers.append(watcher)
        return watcher

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _index(self, path: Path) -> ReconcileReport:
        report = self.reconciler.reconcile_path(path)
        for rejection in report.rejected:
            logger.warning("Written file rejected by indexer: %(path)s: %(reason)s", rejection)
        return report

    def _archetype(self, value: Any) -> Archetype | None:
        warnings: list[str] = []
        archetype = parse_archetype(value, warnings)
        for message in warnings:
            logger.warning(message)
        return archetype

    def _visible_entry(self, entry_id: str, ghost: str | None) -> Entry:
        entry = self.store.repository().get_entry(entry_id)
        if entry is None or not _visible_owner(entry.owner, ghost):
            raise UnknownEntry(f"No entry '{entry_id}' visible to {ghost or 'shared caller'}")
        return entry

    def _topic_entry(self, key: str, ghost: str | None) -> Entry:
        repo = self.store.repository()
        entry = repo.get_entry(key)
        if (
            entry is None
            or entry.entry_type is not EntryType.REFERENCE_TOPIC
            or not _visible_owner(entry.owner, ghost)
        ):
            entry = _prefer_own(
                [
                    e
                    for e in repo.find_entries_by_title(key)
                    if e.entry_type is EntryType.REFERENCE_TOPIC
                ],
                ghost,
            )
        if entry is None:
            raise UnknownEntry(f"No reference topic '{key}' visible to {ghost or 'shared caller'}")
        return entry

    def _writable(self, entry_id: str, ghost: str | None) -> Entry:
        """A visible entry whose file is a front-matter document the caller may rewrite."""
        entry = self._visible_entry(entry_id, ghost)
        if entry.entry_type in (EntryType.REFERENCE_DOCS, EntryType.REFERENCE_CODE):
            raise ValueError(
                f"Entry '{entry_id}' is a reference file; change it with reference_write"
            )
        return entry


# ------------------------------------------------------------------
# Module helpers
# ------------------------------------------------------------------


def _visible_owner(owner: str | None, ghost: str | None) -> bool:
    return owner is None or owner == ghost


def _prefer_own(candidates: list[Entry], ghost: str | None) -> Entry | None:
    own = [e for e in candidates if ghost is not None and e.owner == ghost]
    shared = [e for e in candidates if e.owner is None]
    for group in (own, shared):
        if group:
            return group[0]
    return None


def _resolve(repo: Repository, key: str, ghost: str | None) -> Entry:
    entry = repo.get_entry(key)
    if entry is not None and _visible_owner(entry.owner, ghost):
        return entry

    match = _prefer_own(repo.find_entries_by_title(key), ghost)
    if match is None and "/" in key:
        topic_title, _, member = key.partition("/")
        match = _prefer_own(repo.find_reference_members(topic_title.strip(), member.strip()), ghost)
    if match is None:
        raise UnknownEntry(f"No entry '{key}' visible to {ghost or 'shared caller'}")
    return repo.get_entry(match.id) or match


def _read_body(entry: Entry) -> str:
    try:
        text = Path(entry.path).read_bytes().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    if entry.entry_type in (EntryType.REFERENCE_DOCS, EntryType.REFERENCE_CODE):
        return text
    return split_front_matter(text)[1]


def _load(path: Path) -> tuple[FrontMatter, str]:
    parsed = parse_entry(path.read_bytes(), path)
    return parsed.front, parsed.body


def _listing_path(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict) and isinstance(item.get("path"), str):
        return item["path"].strip()
    return None


def _infer_role(filename: str) -> str:
    return "code" if is_code_path(filename) else "docs"


def _required(fields: dict[str, Any], key: str) -> str:
    value = fields.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' is required")
    return value.strip()


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _trust(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 10:
        raise ValueError(f"trust_score must be an integer 0-10, got {value!r}")
    return value
