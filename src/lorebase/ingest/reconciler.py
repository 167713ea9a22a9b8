"""Reconciler: keep the index in step with the files on disk.

One pass over a scope root:

    walk (sorted) → hash → [unchanged? skip] → parse → chunk
        → embed changed chunk texts (no transaction open)
        → one write transaction per entry
    then delete entries whose files were not seen.

A pass over an unchanged tree writes nothing. Every pass is idempotent, so a
pass can be interrupted at any point and simply run again.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lorebase.config import LorebaseConfig
from lorebase.db.models import (
    Chunk,
    Entry,
    EntryType,
    ReferenceFile,
    format_ts,
    utc_now,
)
from lorebase.db.repository import Repository
from lorebase.db.store import IndexStore
from lorebase.errors import (
    CorruptIndex,
    EmbeddingDimensionMismatch,
    EmbeddingUnavailable,
    ParseFailure,
    PathOutsideRoot,
    ScopeViolation,
)
from lorebase.ingest.chunking import chunk_entry
from lorebase.ingest.code import is_code_path
from lorebase.ingest.embedding_client import EmbeddingClient
from lorebase.ingest.gate import CoalescingGate
from lorebase.ingest.links import (
    LinkRef,
    LinkViolation,
    extract_links,
    link_rows,
    reresolve_titles,
)
from lorebase.ingest.parser import (
    FrontMatter,
    coerce_timestamp,
    content_hash,
    parse_diary,
    parse_entry,
)
from lorebase.paths import TOPIC_FILE, Layout, RootKind, ScopeRoot, is_skipped

logger = logging.getLogger(__name__)

REFERENCE_ROLES = ("docs", "code")
REFERENCE_STATUSES = ("active", "obsolete", "problematic")


def member_entry_id(topic_id: str, rel_path: str) -> str:
    """Entry id of a reference member file."""
    return f"ref:{topic_id}:{rel_path}"


@dataclass
class ReconcileReport:
    scanned: int = 0
    unchanged: int = 0
    indexed: int = 0
    deleted: int = 0
    rejected: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    embedded: int = 0
    embedding_failures: int = 0
    repaired: int = 0
    coalesced: int = 0
    # rejection records, reference metadata and stray-row cleanups
    bookkeeping: int = 0

    @property
    def writes(self) -> int:
        return self.indexed + self.deleted + self.embedded + self.repaired + self.bookkeeping

    def merge(self, other: ReconcileReport) -> ReconcileReport:
        self.scanned += other.scanned
        self.unchanged += other.unchanged
        self.indexed += other.indexed
        self.deleted += other.deleted
        self.rejected.extend(other.rejected)
        self.warnings.extend(other.warnings)
        self.violations.extend(other.violations)
        self.embedded += other.embedded
        self.embedding_failures += other.embedding_failures
        self.repaired += other.repaired
        self.coalesced += other.coalesced
        self.bookkeeping += other.bookkeeping
        return self


@dataclass
class TopicRecord:
    topic_id: str
    files: list[dict[str, Any]]
    max_age_days: int = 0
    fetched_at: str | None = None


@dataclass
class PreparedEntry:
    """Everything needed to write one entry, computed before any transaction."""

    entry: Entry
    body: str
    refs: list[LinkRef] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    topic: TopicRecord | None = None
    reference: ReferenceFile | None = None


class Reconciler:
    """Diff scope roots against the index and apply the difference.

    Args:
        store: Open IndexStore.
        embedder: Client for the configured embedding model.
        layout: Directory layout of the corpus.
        config: Loaded configuration (chunking, embedding batch size, workers).
    """

    def __init__(
        self,
        store: IndexStore,
        embedder: EmbeddingClient,
        layout: Layout,
        config: LorebaseConfig | None = None,
    ) -> None:
        config = config or LorebaseConfig()
        self._store = store
        self._embedder = embedder
        self._layout = layout
        self._chunking = config.chunking
        self._batch_size = max(1, config.embedding.batch_size)
        self._workers = max(1, config.reconcile.workers)
        self._gate = CoalescingGate()
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

    def close(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile_all(self, ghost: str | None = None) -> ReconcileReport:
        """Reconcile every shared root and every ghost's roots.

        With *ghost*, only the shared roots and that ghost's roots. Roots run
        in parallel; embedding backlog and integrity are handled afterwards.
        """
        if ghost is None:
            roots = self._layout.all_roots()
        else:
            roots = self._layout.shared_roots() + self._layout.ghost_roots(ghost)

        report = ReconcileReport()
        for result in self._executor().map(self.reconcile_root, roots):
            report.merge(result)
        report.merge(self.embed_pending())

        try:
            self.verify()
        except CorruptIndex as exc:
            logger.warning("%s; repairing", exc)
            report.merge(self.repair(exc.entry_ids))

        if report.writes:
            with self._store.transaction() as repo:
                repo.set_meta("last_reconcile_at", format_ts(utc_now()))
        logger.info(
            "Reconciled %d roots: %d scanned, %d indexed, %d deleted, %d rejected, %d embedded",
            len(roots),
            report.scanned,
            report.indexed,
            report.deleted,
            len(report.rejected),
            report.embedded,
        )
        return report

    def reconcile_root(self, root: ScopeRoot) -> ReconcileReport:
        """Reconcile one scope root.

        A call for a root that is already being reconciled returns at once
        with ``coalesced=1``; the running pass repeats when it finishes.
        """
        report = ReconcileReport()

        def job() -> None:
            report.merge(self._reconcile_root(root))

        if not self._gate.run(root.path, job):
            report.coalesced += 1
            logger.debug("Coalesced reconcile of %s", root.label)
        return report

    def reconcile_path(self, path: Path | str, force: bool = False) -> ReconcileReport:
        """Index (or un-index) a single file right away.

        A file inside a reference topic reindexes the whole topic.

        Raises:
            PathOutsideRoot: If *path* is not inside any scope root.
        """
        path = Path(path).resolve()
        root = self._layout.root_of(path)
        if root is None:
            raise PathOutsideRoot(f"'{path}' is not inside any indexed scope root")
        report = ReconcileReport()
        if path == root.path or is_skipped(path.relative_to(root.path)):
            return report

        if root.kind is RootKind.REFERENCES:
            topic_file = self._topic_file_for(root, path)
            if topic_file is not None:
                self._index_topic(root, topic_file, report, set(), force=force)
                return report
        elif path.is_file():
            self._index_file(root, path, report, set(), force=force)
            return report

        if root.kind is RootKind.REFERENCES and path.name == TOPIC_FILE:
            self._sweep(path.parent, set(), report)
            return report
        existing = self._store.repository().get_entry_by_path(str(path))
        if existing is not None:
            self._delete(existing.id, report)
        return report

    def embed_pending(self) -> ReconcileReport:
        """Embed every chunk without a current vector for the configured model."""
        report = ReconcileReport()
        model = self._embedder.model
        pending = self._store.repository().pending_chunks(model)
        if not pending:
            return report

        for start in range(0, len(pending), self._batch_size):
            batch = pending[start : start + self._batch_size]
            try:
                vectors = self._embedder.embed([c.content for c in batch])
                if len({len(v) for v in vectors}) > 1:
                    raise EmbeddingUnavailable("Provider returned vectors of mixed width")
                with self._store.transaction() as repo:
                    table = self._store.ensure_vectors(repo, len(vectors[0]))
                    for chunk, vector in zip(batch, vectors):
                        current = repo.get_chunk(chunk.id)
                        if current is None or current.content_hash != chunk.content_hash:
                            continue
                        repo.put_embedding(table, chunk.id, vector)
                        repo.mark_chunk_embedded(chunk.id, model, chunk.content_hash)
                        report.embedded += 1
            except EmbeddingUnavailable as exc:
                remaining = len(pending) - start
                report.embedding_failures += remaining
                logger.warning("Embedding backlog paused, %d chunks pending: %s", remaining, exc)
                break
        return report

    def check_integrity(self) -> list[str]:
        return self._store.check_integrity()

    def verify(self) -> None:
        """Raise CorruptIndex if any entry's derived rows are inconsistent."""
        entry_ids = self._store.check_integrity()
        if entry_ids or self._store.stray_rows():
            raise CorruptIndex(entry_ids)

    def repair(self, entry_ids: list[str] | None = None) -> ReconcileReport:
        """Rebuild the given entries (default: every inconsistent one) from disk.

        Only the named entries are touched. An entry whose file is gone is
        deleted; stray FTS and vec rows are dropped.
        """
        report = ReconcileReport()
        report.bookkeeping += self._store.purge_strays()
        if entry_ids is None:
            entry_ids = self._store.check_integrity()
        for entry_id in entry_ids:
            self._repair_entry(entry_id, report)
        if entry_ids:
            logger.info("Repaired %d entries", report.repaired)
        return report

    def forget(self, entry_id: str) -> ReconcileReport:
        """Delete an entry's index rows (one transaction) and re-resolve links to it."""
        report = ReconcileReport()
        self._delete(entry_id, report)
        return report

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._workers, thread_name_prefix="lorebase-reconcile"
                )
            return self._pool

    def _lock_for(self, key: str) -> threading.Lock:
        with self._path_locks_guard:
            return self._path_locks.setdefault(key, threading.Lock())

    def _walk(self, root: ScopeRoot) -> list[Path]:
        if not root.path.is_dir():
            return []
        pattern = TOPIC_FILE if root.kind is RootKind.REFERENCES else "*.md"
        found: list[Path] = []
        for path in sorted(root.path.rglob(pattern)):
            if path.is_file() and not is_skipped(path.relative_to(root.path)):
                found.append(path)
        return found

    def _reconcile_root(self, root: ScopeRoot) -> ReconcileReport:
        report = ReconcileReport()
        seen: set[str] = set()
        for path in self._walk(root):
            if root.kind is RootKind.REFERENCES:
                self._index_topic(root, path, report, seen)
            else:
                self._index_file(root, path, report, seen)
        self._sweep(root.path, seen, report)
        logger.debug(
            "%s: %d scanned, %d unchanged, %d indexed, %d deleted",
            root.label,
            report.scanned,
            report.unchanged,
            report.indexed,
            report.deleted,
        )
        return report

    def _sweep(self, base: Path, seen: set[str], report: ReconcileReport) -> None:
        """Delete entries and stale rejections under *base* whose files were not seen."""
        prefix = str(base) + os.sep
        repo = self._store.repository()
        for entry_id, path in repo.entries_under(prefix):
            if path not in seen:
                self._delete(entry_id, report)
        stale = [p for p in repo.rejections_under(prefix) if p not in seen]
        if stale:
            with self._store.transaction() as tx:
                for path in stale:
                    if tx.clear_rejection(path):
                        report.bookkeeping += 1

    # ------------------------------------------------------------------
    # Notes + diary files
    # ------------------------------------------------------------------

    def _index_file(
        self,
        root: ScopeRoot,
        path: Path,
        report: ReconcileReport,
        seen: set[str],
        force: bool = False,
    ) -> None:
        key = str(path)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return
        seen.add(key)
        report.scanned += 1
        digest = content_hash(raw)

        with self._lock_for(key):
            repo = self._store.repository()
            existing = repo.get_entry_by_path(key)
            if existing is not None and existing.content_hash == digest and not force:
                report.unchanged += 1
                return
            if not force and self._already_rejected(repo, key, digest, report):
                return
            try:
                prepared = self._prepare_entry(root, path, raw, digest)
            except ParseFailure as exc:
                self._reject(key, digest, exc.reason, report)
                return
            self._commit(prepared, report)

    def _prepare_entry(
        self, root: ScopeRoot, path: Path, raw: bytes, digest: str
    ) -> PreparedEntry:
        if root.kind is RootKind.DIARY:
            parsed = parse_diary(raw, path, root.owner or "")
            entry_type = EntryType.DIARY
        else:
            parsed = parse_entry(raw, path)
            entry_type = parsed.front.entry_type or EntryType.NOTE
            if entry_type is not EntryType.NOTE:
                raise ParseFailure(path, f"entry_type {entry_type.value} is not allowed in notes")
        entry = _entry_from_front(parsed.front, entry_type, root, path, digest)
        return PreparedEntry(
            entry=entry,
            body=parsed.body,
            refs=extract_links(parsed.body),
            warnings=[f"{path}: {w}" for w in parsed.warnings],
        )

    # ------------------------------------------------------------------
    # Reference topics
    # ------------------------------------------------------------------

    def _topic_file_for(self, root: ScopeRoot, path: Path) -> Path | None:
        """The innermost ``topic.md`` at or above *path* inside *root*."""
        directory = path if path.is_dir() else path.parent
        while directory != root.path and root.path in directory.parents:
            candidate = directory / TOPIC_FILE
            if candidate.is_file():
                return candidate
            directory = directory.parent
        return None

    def _index_topic(
        self,
        root: ScopeRoot,
        topic_file: Path,
        report: ReconcileReport,
        seen: set[str],
        force: bool = False,
    ) -> None:
        topic_dir = topic_file.parent
        key = str(topic_file)
        try:
            raw = topic_file.read_bytes()
        except FileNotFoundError:
            return
        here: set[str] = {key}
        report.scanned += 1
        digest = content_hash(raw)

        with self._lock_for(str(topic_dir)):
            repo = self._store.repository()
            existing = repo.get_entry_by_path(key)
            changed = force or existing is None or existing.content_hash != digest
            topic: Entry | None = None
            record: TopicRecord | None = None

            if not changed:
                report.unchanged += 1
                topic = existing
                stored = repo.get_topic(existing.id) or {}
                record = TopicRecord(
                    existing.id,
                    stored.get("files", []),
                    stored.get("max_age_days", 0),
                    stored.get("fetched_at"),
                )
            elif force or not self._already_rejected(repo, key, digest, report):
                try:
                    prepared = self._prepare_topic(root, topic_file, raw, digest)
                except ParseFailure as exc:
                    self._reject(key, digest, exc.reason, report)
                else:
                    if self._commit(prepared, report):
                        topic, record = prepared.entry, prepared.topic

            if topic is None or record is None:
                # Keep previously indexed members until the descriptor is fixed.
                here.update(p for _, p in repo.entries_under(str(topic_dir) + os.sep))
                seen.update(here)
                return

            for listing in record.files:
                self._index_member(root, topic, record, topic_dir, listing, report, here, changed)

            for entry_id, path in repo.entries_under(str(topic_dir) + os.sep):
                if path in here or self._topic_file_for(root, Path(path)) != topic_file:
                    continue
                self._delete(entry_id, report)
        seen.update(here)

    def _prepare_topic(
        self, root: ScopeRoot, path: Path, raw: bytes, digest: str
    ) -> PreparedEntry:
        parsed = parse_entry(raw, path)
        front = parsed.front
        if front.entry_type not in (None, EntryType.REFERENCE_TOPIC):
            raise ParseFailure(path, f"{TOPIC_FILE} must be a ReferenceTopic entry")
        entry = _entry_from_front(front, EntryType.REFERENCE_TOPIC, root, path, digest)
        record = TopicRecord(
            topic_id=front.id,
            files=member_listings(front, path),
            max_age_days=front.max_age_days,
            fetched_at=front.fetched_at,
        )
        return PreparedEntry(
            entry=entry,
            body=parsed.body,
            refs=extract_links(parsed.body),
            warnings=[f"{path}: {w}" for w in parsed.warnings],
            topic=record,
        )

    def _index_member(
        self,
        root: ScopeRoot,
        topic: Entry,
        record: TopicRecord,
        topic_dir: Path,
        listing: dict[str, Any],
        report: ReconcileReport,
        seen: set[str],
        force: bool,
    ) -> None:
        try:
            path = self._layout.confine(topic_dir / listing["path"], base=topic_dir)
        except PathOutsideRoot as exc:
            report.warnings.append(f"{topic.path}: {exc}")
            return
        rel = path.relative_to(topic_dir).as_posix()
        if rel == TOPIC_FILE:
            return
        if not path.is_file():
            message = f"{topic.path}: listed file '{rel}' does not exist"
            logger.warning(message)
            report.warnings.append(message)
            return

        key = str(path)
        seen.add(key)
        report.scanned += 1
        raw = path.read_bytes()
        digest = content_hash(raw)
        ref = ReferenceFile(
            topic_id=topic.id,
            entry_id=member_entry_id(topic.id, rel),
            path=rel,
            role=listing["role"],
            status=listing["status"],
            source_url=listing.get("source_url"),
            source_type=listing.get("source_type"),
            fetched_at=listing.get("fetched_at") or record.fetched_at,
            max_age_days=listing.get("max_age_days", record.max_age_days),
        )

        repo = self._store.repository()
        existing = repo.get_entry_by_path(key)
        if existing is not None and existing.content_hash == digest and not force:
            report.unchanged += 1
            if repo.get_reference_file(existing.id) != ref:
                with self._store.transaction() as tx:
                    tx.upsert_reference_file(ref)
                report.bookkeeping += 1
            return
        if not force and self._already_rejected(repo, key, digest, report):
            return

        try:
            body = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            self._reject(key, digest, f"not valid UTF-8: {exc}", report)
            return

        is_code = ref.role == "code"
        entry = Entry(
            id=ref.entry_id,
            title=path.name,
            entry_type=EntryType.REFERENCE_CODE if is_code else EntryType.REFERENCE_DOCS,
            scope=root.scope,
            owner=root.owner,
            path=key,
            parent_id=topic.id,
            content_hash=digest,
            trust_score=topic.trust_score,
            created_at=ref.fetched_at or topic.created_at,
            created_by_ghost=topic.created_by_ghost,
            created_by_model=topic.created_by_model,
            tags=list(topic.tags),
        )
        refs = [] if is_code else extract_links(body)
        self._commit(PreparedEntry(entry=entry, body=body, refs=refs, reference=ref), report)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _commit(self, prepared: PreparedEntry, report: ReconcileReport) -> bool:
        """Chunk, embed and write one prepared entry. Returns False if rejected."""
        entry = prepared.entry
        try:
            entry.check_scope()
        except ScopeViolation as exc:
            self._reject(entry.path, entry.content_hash, str(exc), report)
            return False

        repo = self._store.repository()
        current = repo.get_entry(entry.id)
        if current is not None and current.path != entry.path and Path(current.path).exists():
            self._reject(
                entry.path,
                entry.content_hash,
                f"duplicate id '{entry.id}', already used by {current.path}",
                report,
            )
            return False

        chunks = chunk_entry(
            entry.id, entry.entry_type, entry.title, prepared.body, entry.path, self._chunking
        )
        vectors = self._embed_changed(repo, entry.id, chunks, report)

        with self._store.transaction() as tx:
            violations = self._apply(tx, prepared, chunks, vectors, report)

        report.indexed += 1
        report.warnings.extend(prepared.warnings)
        report.violations.extend(str(v) for v in violations)
        for violation in violations:
            logger.warning("Link policy violation: %s", violation)
        logger.debug("Indexed %s (%d chunks)", entry.path, len(chunks))
        return True

    def _apply(
        self,
        repo: Repository,
        prepared: PreparedEntry,
        chunks: list[Chunk],
        vectors: dict[str, list[float]],
        report: ReconcileReport,
    ) -> list[LinkViolation]:
        entry = prepared.entry
        titles: list[str] = []

        previous = repo.get_entry(entry.id)
        if previous is not None:
            titles.extend(self._titles_for(repo, previous))
        occupant = repo.get_entry_by_path(entry.path)
        if occupant is not None and occupant.id != entry.id:
            titles.extend(self._titles_for(repo, occupant))
            repo.delete_entry(occupant.id)

        entry.updated_at = format_ts(utc_now())
        repo.upsert_entry(entry)
        repo.replace_tags(entry.id, entry.tags)
        report.embedded += self._replace_chunks(repo, entry, chunks, vectors)

        if prepared.topic is not None:
            record = prepared.topic
            repo.upsert_topic(record.topic_id, record.files, record.max_age_days, record.fetched_at)
            for listing in record.files:
                titles.append(f"{entry.title}/{listing['path']}")
                if previous is not None:
                    titles.append(f"{previous.title}/{listing['path']}")
        if prepared.reference is not None:
            repo.upsert_reference_file(prepared.reference)
        titles.extend(self._titles_for(repo, entry))

        rows, violations = link_rows(repo, entry.id, entry.owner, prepared.refs)
        repo.replace_links(entry.id, rows)
        violations.extend(reresolve_titles(repo, titles))
        repo.clear_rejection(entry.path)
        return violations

    def _replace_chunks(
        self,
        repo: Repository,
        entry: Entry,
        chunks: list[Chunk],
        vectors: dict[str, list[float]],
    ) -> int:
        """Diff *chunks* against the stored rows. Returns the number of vectors written.

        A chunk whose hash matches a stored chunk takes over that row (and its
        vector). A changed chunk takes over the row at its old index, keeping
        the stale vector until a new one is written.
        """
        model = self._embedder.model
        old = repo.get_chunks(entry.id)

        by_hash: dict[str, list[Chunk]] = {}
        for chunk in sorted(old, key=lambda c: c.embedded_hash != c.content_hash):
            by_hash.setdefault(chunk.content_hash, []).append(chunk)
        taken: set[int] = set()

        for chunk in chunks:
            candidates = by_hash.get(chunk.content_hash)
            if candidates:
                match = candidates.pop(0)
                _adopt(chunk, match)
                taken.add(match.id)

        free = {c.chunk_index: c for c in old if c.id not in taken}
        for chunk in chunks:
            if chunk.id is None and chunk.chunk_index in free:
                match = free.pop(chunk.chunk_index)
                _adopt(chunk, match)
                taken.add(match.id)

        repo.delete_chunk_ids([c.id for c in old if c.id not in taken])
        repo.unindex_chunk_text(sorted(taken))

        written = 0
        table: str | None = None
        for chunk in chunks:
            if chunk.id is None:
                repo.insert_chunk(chunk)
            else:
                repo.update_chunk(chunk)
            repo.index_chunk_text(chunk, entry)

            current = chunk.embedding_model == model and not chunk.needs_embedding
            vector = vectors.get(chunk.content_hash)
            if vector is not None and not current:
                if table is None:
                    table = self._store.ensure_vectors(repo, len(vector))
                repo.put_embedding(table, chunk.id, vector)
                repo.mark_chunk_embedded(chunk.id, model, chunk.content_hash)
                chunk.embedding_model = model
                chunk.embedded_hash = chunk.content_hash
                written += 1
        return written

    def _embed_changed(
        self,
        repo: Repository,
        entry_id: str,
        chunks: list[Chunk],
        report: ReconcileReport,
    ) -> dict[str, list[float]]:
        """Embed chunk texts that have no current vector. Failures leave them pending."""
        model = self._embedder.model
        have = {
            c.content_hash
            for c in repo.get_chunks(entry_id)
            if c.embedding_model == model and not c.needs_embedding
        }
        todo: dict[str, str] = {}
        for chunk in chunks:
            if chunk.content_hash not in have:
                todo.setdefault(chunk.content_hash, chunk.content)
        if not todo:
            return {}

        try:
            vectors = self._embedder.embed(list(todo.values()))
            widths = {len(v) for v in vectors}
            known = self._store.dimensions(repo)
            if len(widths) > 1:
                raise EmbeddingUnavailable(f"Provider returned mixed widths {sorted(widths)}")
            width = widths.pop()
            if known is not None and width != known:
                raise EmbeddingDimensionMismatch(model, known, width)
        except EmbeddingUnavailable as exc:
            report.embedding_failures += len(todo)
            logger.warning("%d chunks of %s left pending: %s", len(todo), entry_id, exc)
            return {}
        return dict(zip(todo, vectors))

    # ------------------------------------------------------------------
    # Deletion, rejection, repair
    # ------------------------------------------------------------------

    def _titles_for(self, repo: Repository, entry: Entry) -> list[str]:
        """Titles links may use for *entry*: its own and, for members, the long form."""
        titles = [entry.title]
        ref = repo.get_reference_file(entry.id)
        if ref is not None:
            topic = repo.get_entry(ref.topic_id)
            if topic is not None:
                titles.append(f"{topic.title}/{ref.path}")
        return titles

    def _delete(self, entry_id: str, report: ReconcileReport) -> None:
        with self._store.transaction() as repo:
            entry = repo.get_entry(entry_id)
            if entry is None:
                return
            titles = self._titles_for(repo, entry)
            repo.delete_entry(entry_id)
            violations = reresolve_titles(repo, titles)
        report.deleted += 1
        report.violations.extend(str(v) for v in violations)
        logger.debug("Deleted %s (%s)", entry_id, entry.path)

    def _already_rejected(
        self, repo: Repository, path: str, digest: str, report: ReconcileReport
    ) -> bool:
        rejection = repo.get_rejection(path)
        if rejection is None or rejection[0] != digest:
            return False
        report.rejected.append({"path": path, "reason": rejection[1]})
        logger.debug("Still rejected: %s (%s)", path, rejection[1])
        return True

    def _reject(self, path: str, digest: str, reason: str, report: ReconcileReport) -> None:
        report.rejected.append({"path": path, "reason": reason})
        logger.warning("Rejected %s: %s", path, reason)
        if self._store.repository().get_rejection(path) == (digest, reason):
            return
        with self._store.transaction() as repo:
            repo.record_rejection(path, digest, reason, format_ts(utc_now()))
        report.bookkeeping += 1

    def _repair_entry(self, entry_id: str, report: ReconcileReport) -> None:
        repo = self._store.repository()
        entry = repo.get_entry(entry_id)
        if entry is None:
            with self._store.transaction() as tx:
                tx.delete_chunks(entry_id)
            report.repaired += 1
            return

        path = Path(entry.path)
        root = self._layout.root_of(path)
        if root is None or not path.is_file():
            self._delete(entry_id, report)
            report.repaired += 1
            return

        with self._store.transaction() as tx:
            tx.delete_chunks(entry_id)
        rebuilt = ReconcileReport()
        if root.kind is RootKind.REFERENCES:
            topic_file = self._topic_file_for(root, path)
            if topic_file is not None:
                self._index_topic(root, topic_file, rebuilt, set(), force=True)
        else:
            self._index_file(root, path, rebuilt, set(), force=True)
        report.embedded += rebuilt.embedded
        report.embedding_failures += rebuilt.embedding_failures
        report.rejected.extend(rebuilt.rejected)
        report.violations.extend(rebuilt.violations)
        report.repaired += 1


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _adopt(chunk: Chunk, row: Chunk) -> None:
    chunk.id = row.id
    chunk.embedding_model = row.embedding_model
    chunk.embedded_hash = row.embedded_hash


def _entry_from_front(
    front: FrontMatter, entry_type: EntryType, root: ScopeRoot, path: Path, digest: str
) -> Entry:
    return Entry(
        id=front.id,
        title=front.title,
        entry_type=entry_type,
        scope=root.scope,
        owner=root.owner,
        path=str(path),
        content_hash=digest,
        trust_score=front.trust_score,
        created_at=front.created_at,
        created_by_ghost=front.created_by_ghost,
        created_by_model=front.created_by_model,
        archetype=front.archetype if entry_type is EntryType.NOTE else None,
        parent_id=front.parent,
        version=front.version,
        last_validated_at=front.last_validated_at,
        last_validated_by_ghost=front.last_validated_by_ghost,
        last_validated_by_model=front.last_validated_by_model,
        comments=list(front.comments),
        tags=list(front.tags),
    )


def _source_for(rel_path: str, sources: list[dict]) -> dict:
    """The first source whose ``paths`` cover *rel_path*; else the first without paths."""
    fallback: dict = {}
    for source in sources:
        patterns = source.get("paths")
        if not patterns:
            fallback = fallback or source
            continue
        if isinstance(patterns, str):
            patterns = [patterns]
        for pattern in patterns:
            prefix = str(pattern).rstrip("/")
            if (
                fnmatch.fnmatch(rel_path, str(pattern))
                or rel_path == prefix
                or rel_path.startswith(prefix + "/")
            ):
                return source
    return fallback


def member_listings(front: FrontMatter, path: Path | str) -> list[dict[str, Any]]:
    """Normalise a topic's ``files`` list into full per-file metadata.

    Role comes from the file mapping, then from the matching source, then
    from the file extension.

    Raises:
        ParseFailure: On a malformed ``files`` item, role or status.
    """
    listings: dict[str, dict[str, Any]] = {}
    for item in front.files:
        if isinstance(item, str):
            item = {"path": item}
        if not isinstance(item, dict) or not isinstance(item.get("path"), str):
            raise ParseFailure(path, f"invalid files entry {item!r}")
        rel = item["path"].strip().replace("\\", "/")
        while rel.startswith("./"):
            rel = rel[2:]
        if not rel:
            raise ParseFailure(path, "files entry with an empty path")
        source = _source_for(rel, front.sources)

        role = item.get("role") or source.get("role") or ("code" if is_code_path(rel) else "docs")
        if role not in REFERENCE_ROLES:
            raise ParseFailure(path, f"file '{rel}' has unknown role '{role}'")
        status = item.get("status") or "active"
        if status not in REFERENCE_STATUSES:
            raise ParseFailure(path, f"file '{rel}' has unknown status '{status}'")

        fetched_at = item.get("fetched_at")
        if fetched_at is not None:
            fetched_at = coerce_timestamp(fetched_at, f"files[{rel}].fetched_at", path)
        max_age = item.get("max_age_days", front.max_age_days)
        if isinstance(max_age, bool) or not isinstance(max_age, int) or max_age < 0:
            raise ParseFailure(path, f"file '{rel}' has invalid max_age_days {max_age!r}")

        listings.setdefault(
            rel,
            {
                "path": rel,
                "role": role,
                "status": status,
                "source_url": item.get("source_url") or source.get("url"),
                "source_type": item.get("source_type") or source.get("type"),
                "fetched_at": fetched_at or front.fetched_at,
                "max_age_days": max_age,
            },
        )
    return list(listings.values())
