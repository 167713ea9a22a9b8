"""Graph expansion around direct search hits.

For each direct hit, in rank order: its parent, up to ``tag_sibling_max``
tag siblings, then resolved links out and in. Every candidate passes the
same visibility predicate as the direct hits, duplicates are dropped, and
the total is capped at ``graph_max``.
"""

from __future__ import annotations

from lorebase.config import SearchCfg
from lorebase.db.repository import Repository
from lorebase.query.results import SearchHit, Visibility, make_hit


def _neighbours(
    repo: Repository, entry_id: str, visibility: Visibility, config: SearchCfg
) -> list[tuple[str, str]]:
    """``(entry_id, via)`` candidates next to *entry_id*, in expansion order."""
    found: list[tuple[str, str]] = []
    entry = repo.get_entry(entry_id)
    if entry is not None and entry.parent_id:
        found.append((entry.parent_id, "parent"))
    for sibling in repo.tag_siblings(
        entry_id, visibility.where, visibility.params, config.tag_sibling_max
    ):
        found.append((sibling, "tag"))
    for link in repo.get_links_out(entry_id):
        if link.target_id:
            found.append((link.target_id, "link"))
    for link in repo.get_links_in(entry_id):
        found.append((link.source_id, "link"))
    return found


def expand(
    repo: Repository,
    hits: list[SearchHit],
    visibility: Visibility,
    config: SearchCfg | None = None,
) -> list[SearchHit]:
    """Return expansion hits for *hits* (which are not modified)."""
    config = config or SearchCfg()
    if config.graph_max <= 0 or config.graph_depth <= 0:
        return []

    taken = {h.entry_id for h in hits}
    frontier = [h.entry_id for h in hits]
    expanded: list[SearchHit] = []

    for _ in range(config.graph_depth):
        candidates: list[tuple[str, str]] = []
        for entry_id in frontier:
            candidates.extend(_neighbours(repo, entry_id, visibility, config))
        visible = repo.visible_ids(
            sorted({cid for cid, _ in candidates}), visibility.where, visibility.params
        )

        frontier = []
        for candidate_id, via in candidates:
            if candidate_id in taken or candidate_id not in visible:
                continue
            entry = repo.get_entry(candidate_id)
            if entry is None:
                continue
            taken.add(candidate_id)
            chunks = repo.get_chunks(candidate_id)
            expanded.append(
                make_hit(entry, chunks[0] if chunks else None, 0.0, source="expansion", via=via)
            )
            frontier.append(candidate_id)
            if len(expanded) >= config.graph_max:
                return expanded
        if not frontier:
            break
    return expanded
