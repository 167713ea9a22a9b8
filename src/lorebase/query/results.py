"""Request and result types shared by the retriever and graph expansion."""

from __future__ import annotations

from dataclasses import dataclass, field

from lorebase.db.models import Archetype, Category, Chunk, Entry, Scope

SNIPPET_CHARS = 320


@dataclass
class Visibility:
    """A SQL predicate over alias ``e`` (entries) plus its parameters."""

    where: str
    params: list[object]

    @property
    def empty(self) -> bool:
        return self.where == "0"


@dataclass
class SearchRequest:
    """One query, from the point of view of *ghost* (None = shared-only caller)."""

    query: str
    ghost: str | None = None
    scopes: list[Scope] | None = None
    category: Category | None = None
    topic: str | None = None  # topic id or title
    archetype: Archetype | None = None
    limit: int | None = None


@dataclass
class SearchHit:
    entry_id: str
    title: str
    snippet: str
    chunk_title: str | None
    score: float
    scope: Scope
    owner: str | None
    tags: list[str]
    entry_type: str
    archetype: str | None
    trust_score: int
    updated_at: str | None
    source: str = "direct"  # direct | expansion
    via: str | None = None  # parent | tag | link (expansions only)


@dataclass
class SearchResult:
    hits: list[SearchHit] = field(default_factory=list)
    lexical_only: bool = False

    @property
    def direct(self) -> list[SearchHit]:
        return [h for h in self.hits if h.source == "direct"]

    @property
    def expanded(self) -> list[SearchHit]:
        return [h for h in self.hits if h.source == "expansion"]


def snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def make_hit(
    entry: Entry,
    chunk: Chunk | None,
    score: float,
    source: str = "direct",
    via: str | None = None,
) -> SearchHit:
    return SearchHit(
        entry_id=entry.id,
        title=entry.title,
        snippet=snippet(chunk.content) if chunk else "",
        chunk_title=chunk.title if chunk else None,
        score=score,
        scope=entry.scope,
        owner=entry.owner,
        tags=list(entry.tags),
        entry_type=entry.entry_type.value,
        archetype=entry.archetype.value if entry.archetype else None,
        trust_score=entry.trust_score,
        updated_at=entry.updated_at,
        source=source,
        via=via,
    )
