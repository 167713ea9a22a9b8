"""Wiki-link extraction and resolution.

Links are stored as an edge table keyed by ids; resolving a link is a title
lookup, never an object reference, so cycles are harmless.

Visibility rule for resolution:
  - a ghost-owned source may resolve to its own entries (preferred) or to
    shared entries;
  - a shared source may resolve only to shared entries. A title that exists
    only in private scopes leaves the link unresolved and is reported as a
    violation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from lorebase.db.models import Entry, Link
from lorebase.db.repository import Repository

logger = logging.getLogger(__name__)

WIKI_LINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")


@dataclass(frozen=True)
class LinkRef:
    target: str
    alias: str = ""


@dataclass(frozen=True)
class Resolution:
    target_id: str | None
    violation: bool = False


@dataclass(frozen=True)
class LinkViolation:
    source_id: str
    target_title: str

    def __str__(self) -> str:
        return f"{self.source_id} -> [[{self.target_title}]] resolves only to private entries"


def extract_links(text: str) -> list[LinkRef]:
    """Return unique ``[[Title]]`` / ``[[Title|alias]]`` references in order."""
    seen: dict[LinkRef, None] = {}
    for match in WIKI_LINK_RE.finditer(text):
        target = match.group(1).strip()
        alias = (match.group(2) or "").strip()
        if target:
            seen.setdefault(LinkRef(target, alias), None)
    return list(seen)


def _visible(candidates: list[Entry], source_owner: str | None) -> Entry | None:
    if source_owner is not None:
        for entry in candidates:
            if entry.owner == source_owner:
                return entry
    for entry in candidates:
        if entry.owner is None:
            return entry
    return None


def resolve_target(repo: Repository, source_owner: str | None, target_title: str) -> Resolution:
    """Find the entry a link from *source_owner*'s entry should point at."""
    candidates = repo.find_entries_by_title(target_title)
    if not candidates and "/" in target_title:
        topic_title, _, member = target_title.partition("/")
        candidates = repo.find_reference_members(topic_title.strip(), member.strip())
    if not candidates:
        return Resolution(None)
    match = _visible(candidates, source_owner)
    if match is not None:
        return Resolution(match.id)
    return Resolution(None, violation=True)


def link_rows(
    repo: Repository, source_id: str, source_owner: str | None, refs: Iterable[LinkRef]
) -> tuple[list[Link], list[LinkViolation]]:
    """Build resolved Link rows for an entry's outgoing references."""
    rows: list[Link] = []
    violations: list[LinkViolation] = []
    for ref in refs:
        resolution = resolve_target(repo, source_owner, ref.target)
        if resolution.violation:
            violations.append(LinkViolation(source_id, ref.target))
        rows.append(Link(source_id, ref.target, ref.alias, resolution.target_id))
    return rows, violations


def reresolve_titles(repo: Repository, titles: Iterable[str]) -> list[LinkViolation]:
    """Re-run resolution for every stored link aimed at any of *titles*.

    Only ``links.target_id`` changes; source entries are not touched.
    """
    violations: list[LinkViolation] = []
    owners: dict[str, str | None] = {}
    for link in repo.links_to_titles(titles):
        if link.source_id not in owners:
            owners[link.source_id] = repo.entry_owner(link.source_id)[1]
        resolution = resolve_target(repo, owners[link.source_id], link.target_title)
        if resolution.violation:
            violations.append(LinkViolation(link.source_id, link.target_title))
        if repo.set_link_target(link, resolution.target_id):
            logger.debug(
                "Link %s -> [[%s]] now %s",
                link.source_id,
                link.target_title,
                resolution.target_id or "unresolved",
            )
    return violations
