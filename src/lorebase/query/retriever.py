"""Hybrid retriever: BM25 (FTS5) + dense (sqlite-vec), fused via RRF.

Visibility is part of both candidate queries: a caller only ever sees shared
scopes plus its own ghost scopes, and the request filters narrow that set
inside SQL, before any ranking happens.

Reciprocal Rank Fusion over entry rankings:
  score(e) = Σ 1 / (k + rank_i(e))     ranks 1-based, k = search.rrf_k
Ties: trust_score desc, updated_at desc, entry id.

Reference files marked obsolete are invisible to search; problematic ones
keep their place in the candidate lists but their fused score is halved.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from lorebase.config import SearchCfg
from lorebase.db.models import GHOST_SCOPES, SHARED_SCOPES, Chunk, Entry, EntryType, Scope
from lorebase.db.repository import Repository
from lorebase.db.store import IndexStore
from lorebase.errors import EmbeddingUnavailable
from lorebase.ingest.embedding_client import EmbeddingClient
from lorebase.query.graph import expand
from lorebase.query.results import SearchRequest, SearchResult, Visibility, make_hit

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_DENSE_OVERFETCH = 4
# vec0 refuses larger k values
_DENSE_MAX_K = 4096
PROBLEMATIC_FACTOR = 0.5


def search(
    request: SearchRequest,
    *,
    store: IndexStore,
    embedder: EmbeddingClient | None,
    config: SearchCfg | None = None,
) -> SearchResult:
    """Run hybrid retrieval plus graph expansion for *request*.

    Falls back to lexical-only ranking (``lexical_only=True``) when there is
    no vector index yet or the embedding provider is unavailable.
    """
    config = config or SearchCfg()
    limit = request.limit or config.max_results
    query_vector, lexical_only = _embed_query(request.query, store, embedder)

    with store.snapshot() as repo:
        visibility = visibility_clause(repo, request)
        if visibility.empty:
            return SearchResult(lexical_only=lexical_only)

        lexical = _lexical_candidates(repo, request.query, visibility, config.bm25_limit)
        rankings = [lexical]
        if query_vector is not None:
            rankings.append(
                _dense_candidates(repo, store.vec_table, query_vector, visibility, config.dense_limit)
            )

        chunks = _collapse_all(repo, rankings)
        entries = {eid: repo.get_entry(eid) for eid in chunks}
        entries = {eid: e for eid, e in entries.items() if e is not None}
        statuses = repo.reference_statuses(sorted(entries))
        fused = fuse_rankings(
            [[eid for eid in ranking if eid in entries] for ranking in _entry_rankings(rankings)],
            k=config.rrf_k,
            info={eid: (e.trust_score, e.updated_at or "") for eid, e in entries.items()},
            weights={
                eid: PROBLEMATIC_FACTOR
                for eid, status in statuses.items()
                if status == "problematic"
            },
        )

        hits = [make_hit(entries[eid], chunks[eid], score) for eid, score in fused[:limit]]
        hits.extend(expand(repo, hits, visibility, config))
    logger.debug(
        "search %r ghost=%s: %d direct, lexical_only=%s",
        request.query,
        request.ghost,
        len([h for h in hits if h.source == "direct"]),
        lexical_only,
    )
    return SearchResult(hits=hits, lexical_only=lexical_only)


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------


def fuse_rankings(
    rankings: Sequence[Sequence[str]],
    k: int = 60,
    info: dict[str, tuple[int, str]] | None = None,
    weights: dict[str, float] | None = None,
) -> list[tuple[str, float]]:
    """Fuse ranked id lists with Reciprocal Rank Fusion.

    An id absent from a list gets nothing from it. *info* maps id to
    ``(trust_score, updated_at)`` for tie-breaking. *weights* scales the
    fused score of individual ids before sorting.
    """
    info = info or {}
    scores: dict[str, float] = {}
    for ranking in rankings:
        for rank, entry_id in enumerate(ranking, start=1):
            scores[entry_id] = scores.get(entry_id, 0.0) + 1.0 / (k + rank)
    for entry_id, weight in (weights or {}).items():
        if entry_id in scores:
            scores[entry_id] *= weight

    ordered = sorted(scores)
    ordered.sort(key=lambda eid: info.get(eid, (0, ""))[1], reverse=True)
    ordered.sort(key=lambda eid: (scores[eid], info.get(eid, (0, ""))[0]), reverse=True)
    return [(eid, scores[eid]) for eid in ordered]


# ------------------------------------------------------------------
# Visibility
# ------------------------------------------------------------------


def visible_scopes(ghost: str | None) -> tuple[Scope, ...]:
    return SHARED_SCOPES + GHOST_SCOPES if ghost else SHARED_SCOPES


def visibility_clause(repo: Repository, request: SearchRequest) -> Visibility:
    """Translate caller identity and request filters into SQL over ``e``."""
    clauses: list[str] = []
    params: list[object] = []

    clauses.append(
        "e.id NOT IN (SELECT rf.entry_id FROM reference_files rf WHERE rf.status = 'obsolete')"
    )
    if request.ghost:
        clauses.append("(e.owner IS NULL OR e.owner = ?)")
        params.append(request.ghost)
    else:
        clauses.append("e.owner IS NULL")

    allowed = list(visible_scopes(request.ghost))
    if request.scopes:
        allowed = [s for s in allowed if s in request.scopes]
    if request.category is not None:
        allowed = [s for s in allowed if s in request.category.scopes()]
    if not allowed:
        return Visibility("0", [])
    clauses.append(f"e.scope IN ({','.join('?' * len(allowed))})")
    params.extend(s.value for s in allowed)

    if request.archetype is not None:
        clauses.append("e.archetype = ?")
        params.append(request.archetype.value)

    if request.topic:
        topic_ids = _visible_topic_ids(repo, request.topic, request.ghost)
        if not topic_ids:
            return Visibility("0", [])
        marks = ",".join("?" * len(topic_ids))
        clauses.append(f"(e.id IN ({marks}) OR e.parent_id IN ({marks}))")
        params.extend(topic_ids)
        params.extend(topic_ids)

    return Visibility(" AND ".join(clauses), params)


def _visible_topic_ids(repo: Repository, key: str, ghost: str | None) -> list[str]:
    candidates: list[Entry] = []
    by_id = repo.get_entry(key)
    if by_id is not None:
        candidates.append(by_id)
    candidates.extend(repo.find_entries_by_title(key))
    return sorted(
        {
            e.id
            for e in candidates
            if e.entry_type is EntryType.REFERENCE_TOPIC and e.owner in (None, ghost)
        }
    )


# ------------------------------------------------------------------
# Candidates
# ------------------------------------------------------------------


def fts_query(text: str) -> str | None:
    """Quote every word token and OR them, so user text can't inject FTS syntax."""
    tokens = _TOKEN_RE.findall(text)
    if not tokens:
        return None
    unique = list(dict.fromkeys(t.lower() for t in tokens))
    return " OR ".join(f'"{t}"' for t in unique)


def _lexical_candidates(
    repo: Repository, query: str, visibility: Visibility, limit: int
) -> list[tuple[int, str]]:
    match = fts_query(query)
    if match is None:
        return []
    rows = repo.search_fts(match, visibility.where, visibility.params, limit)
    return [(r["chunk_id"], r["entry_id"]) for r in rows]


def _dense_candidates(
    repo: Repository,
    table: str,
    vector: list[float],
    visibility: Visibility,
    limit: int,
) -> list[tuple[int, str]]:
    """Nearest visible chunks.

    The KNN step runs before the visibility filter, so when other callers'
    chunks crowd the neighbourhood the overfetch widens until *limit*
    visible rows come back or the whole table has been considered.
    """
    total = repo.count_embeddings(table)
    if total == 0:
        return []
    ceiling = min(total, _DENSE_MAX_K)
    k = min(limit * _DENSE_OVERFETCH, ceiling)
    while True:
        rows = repo.search_vec(
            table, vector, visibility.where, visibility.params, k=k, limit=limit
        )
        if len(rows) >= limit or k >= ceiling:
            break
        k = min(k * _DENSE_OVERFETCH, ceiling)
    return [(r["chunk_id"], r["entry_id"]) for r in rows]


def _embed_query(
    query: str, store: IndexStore, embedder: EmbeddingClient | None
) -> tuple[list[float] | None, bool]:
    """Return ``(vector, lexical_only)``."""
    if embedder is None or not query.strip() or not store.has_vectors():
        return None, True
    try:
        vector = embedder.embed_query(query)
    except EmbeddingUnavailable as exc:
        logger.warning("Dense search unavailable, using lexical only: %s", exc)
        return None, True
    dims = store.dimensions()
    if dims is not None and len(vector) != dims:
        logger.warning(
            "Query vector has %d dims, index has %d; using lexical only", len(vector), dims
        )
        return None, True
    return vector, False


# ------------------------------------------------------------------
# Chunk → entry collapse
# ------------------------------------------------------------------


def _entry_rankings(rankings: list[list[tuple[int, str]]]) -> list[list[str]]:
    """Each entry ranks at its best chunk."""
    return [list(dict.fromkeys(entry_id for _, entry_id in ranking)) for ranking in rankings]


def _collapse_all(repo: Repository, rankings: list[list[tuple[int, str]]]) -> dict[str, Chunk]:
    """Pick the snippet chunk per entry: the one at the entry's best rank in any list."""
    best: dict[str, tuple[int, int]] = {}
    for ranking in rankings:
        seen: set[str] = set()
        position = 0
        for chunk_id, entry_id in ranking:
            if entry_id in seen:
                continue
            seen.add(entry_id)
            position += 1
            if entry_id not in best or position < best[entry_id][0]:
                best[entry_id] = (position, chunk_id)

    chunks: dict[str, Chunk] = {}
    for entry_id, (_, chunk_id) in best.items():
        chunk = repo.get_chunk(chunk_id)
        if chunk is not None:
            chunks[entry_id] = chunk
    return chunks

