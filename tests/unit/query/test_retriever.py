"""Tests for hybrid retrieval, visibility and RRF fusion."""

from __future__ import annotations

import math
import re
from unittest.mock import MagicMock

import pytest

from lorebase.db.models import Archetype, Category, Scope
from lorebase.query.retriever import fts_query, fuse_rankings, visible_scopes


def _offline(fake_embed) -> None:
    fake_embed.side_effect = ConnectionError("provider down")


def _ids(result) -> list[str]:
    return [h.entry_id for h in result.direct]


# ------------------------------------------------------------------
# Fusion
# ------------------------------------------------------------------


def test_rrf_rewards_presence_in_both_lists():
    fused = dict(fuse_rankings([["x", "a", "b"], ["y", "z", "x"]], k=60))
    assert fused["x"] == pytest.approx(1 / 61 + 1 / 63)
    assert fused["y"] == pytest.approx(1 / 61)
    assert fused["x"] > fused["y"]


def test_rrf_ties_break_on_trust_then_recency_then_id():
    info = {
        "a": (5, "2026-01-01T00:00:00Z"),
        "b": (9, "2026-01-01T00:00:00Z"),
        "c": (5, "2026-02-01T00:00:00Z"),
        "d": (5, "2026-01-01T00:00:00Z"),
    }
    fused = fuse_rankings([["a"], ["b"], ["c"], ["d"]], k=60, info=info)
    assert [eid for eid, _ in fused] == ["b", "c", "a", "d"]


def test_rrf_empty():
    assert fuse_rankings([[], []]) == []


# ------------------------------------------------------------------
# Query text
# ------------------------------------------------------------------


def test_fts_query_quotes_tokens():
    assert fts_query("Tokio runtime") == '"tokio" OR "runtime"'


def test_fts_query_neutralises_syntax():
    assert fts_query('NEAR(a b) OR "x" -y*') == '"near" OR "a" OR "b" OR "or" OR "x" OR "y"'


def test_fts_query_without_tokens():
    assert fts_query("?! ...") is None


def test_visible_scopes():
    assert visible_scopes(None) == (Scope.SHARED_NOTE, Scope.SHARED_REFERENCE)
    assert Scope.GHOST_DIARY in visible_scopes("alpha")


# ------------------------------------------------------------------
# Search over an indexed corpus
# ------------------------------------------------------------------


@pytest.fixture
def corpus(engine, write_note):
    layout = engine.layout
    write_note(layout.shared_notes / "tokio.md", "shared-tokio", "Tokio runtime",
               "The tokio runtime drives async tasks.", tags=["rust/async"])
    write_note(layout.shared_notes / "serde.md", "shared-serde", "Serde",
               "Serialization framework for rust.", archetype="concept")
    write_note(layout.ghost_notes("alpha") / "tokio-alpha.md", "alpha-tokio", "Alpha tokio",
               "alpha private tokio notes", ghost="alpha")
    write_note(layout.ghost_notes("beta") / "tokio-beta.md", "beta-tokio", "Beta tokio",
               "beta private tokio notes", ghost="beta")
    diary = layout.ghost_diary("alpha")
    diary.mkdir(parents=True, exist_ok=True)
    (diary / "2026-03-01.md").write_text("debugged the tokio scheduler today")
    engine.reconcile()
    return engine


def test_hybrid_search_ranks_lexical_match_first(corpus):
    result = corpus.search("runtime", ghost="alpha")
    assert not result.lexical_only
    assert _ids(result)[0] == "shared-tokio"


def test_ghost_sees_shared_and_own_only(corpus):
    visible = set(_ids(corpus.search("tokio", ghost="alpha", limit=20)))
    assert "alpha-tokio" in visible
    assert "shared-tokio" in visible
    assert "beta-tokio" not in visible


def test_shared_caller_sees_shared_only(corpus):
    hits = corpus.search("tokio private notes", limit=20).hits
    assert hits
    assert all(h.owner is None for h in hits)


def test_no_vectors_means_lexical_only(engine, write_note, fake_embed):
    _offline(fake_embed)
    write_note(engine.layout.shared_notes / "a.md", "a", "A", "tokio")
    engine.reconcile()
    result = engine.search("tokio")
    assert result.lexical_only
    assert _ids(result) == ["a"]


def test_provider_outage_falls_back_to_lexical(corpus, fake_embed):
    _offline(fake_embed)
    result = corpus.search("serialization", ghost="alpha")
    assert result.lexical_only
    assert _ids(result) == ["shared-serde"]


def test_limit_caps_direct_hits(corpus):
    assert len(corpus.search("tokio", ghost="alpha", limit=2).direct) == 2


def test_category_filter(corpus):
    result = corpus.search("tokio", ghost="alpha", category=Category.DIARY, limit=20)
    assert [h.scope for h in result.direct] == [Scope.GHOST_DIARY]


def test_category_diary_for_shared_caller_is_empty(corpus):
    assert corpus.search("tokio", category=Category.DIARY).hits == []


def test_scope_filter(corpus):
    result = corpus.search("tokio", ghost="alpha", scopes=[Scope.GHOST_NOTE], limit=20)
    assert _ids(result) == ["alpha-tokio"]


def test_archetype_filter(corpus):
    result = corpus.search("rust", ghost="alpha", archetype=Archetype.CONCEPT, limit=20)
    assert _ids(result) == ["shared-serde"]


def test_topic_filter(engine):
    engine.reference_write("tokio", "guide.md", "# Guide\n\nspawn tasks with tokio")
    engine.reference_write("serde", "guide.md", "# Guide\n\nderive Serialize")
    result = engine.search("guide", topic="tokio", limit=20)
    assert result.direct
    topic_id = engine.get("tokio").entry.id
    for hit in result.direct:
        entry = engine.get(hit.entry_id).entry
        assert hit.entry_id == topic_id or entry.parent_id == topic_id


def test_unknown_topic_yields_nothing(corpus):
    assert corpus.search("tokio", topic="no-such-topic").hits == []


def test_hit_fields(corpus, fake_embed):
    _offline(fake_embed)
    hit = corpus.search("serialization").direct[0]
    assert hit.title == "Serde"
    assert hit.archetype == "concept"
    assert hit.entry_type == "Note"
    assert "Serialization" in hit.snippet
    assert hit.score > 0


# ------------------------------------------------------------------
# Exact ordering
# ------------------------------------------------------------------

_BEARINGS = {"north": 0.0, "east": 0.3, "south": 0.6, "west": 0.9}
_BEARING_RE = re.compile(r"\b(north|east|south|west)\b")


def _bearing_embedding(model, input, **kwargs):
    """Unit vectors whose angle from the query follows the compass word in the text."""
    response = MagicMock()
    response.data = []
    for text in input:
        match = _BEARING_RE.search(text.lower())
        theta = _BEARINGS[match.group(1)] if match else 0.0
        vec = [0.0] * 16
        vec[0], vec[1] = math.cos(theta), math.sin(theta)
        response.data.append({"embedding": vec})
    return response


def test_fused_order_on_fixed_corpus(engine, write_note, fake_embed):
    # lexical: x, y, z      dense: y, x, z, w
    # x and y tie at 1/61 + 1/62; y wins on trust
    fake_embed.side_effect = _bearing_embedding
    notes = engine.layout.shared_notes
    write_note(notes / "x.md", "x-lex", "First", "compass compass compass east")
    write_note(notes / "y.md", "y-dense", "Second", "compass compass north filler filler",
               trust=8)
    write_note(notes / "z.md", "z-tail", "Third", "compass south filler filler filler filler")
    write_note(notes / "w.md", "w-vector", "Fourth", "west filler filler", trust=9)
    engine.reconcile()

    result = engine.search("compass", limit=10)

    assert not result.lexical_only
    assert _ids(result) == ["y-dense", "x-lex", "z-tail", "w-vector"]
    scores = {h.entry_id: h.score for h in result.direct}
    assert scores["x-lex"] == scores["y-dense"] == pytest.approx(1 / 61 + 1 / 62)
    assert scores["z-tail"] == pytest.approx(2 / 63)
    assert scores["w-vector"] == pytest.approx(1 / 64)


def test_dense_leg_sees_past_other_ghosts_chunks(engine, write_note, fake_embed):
    fake_embed.side_effect = _bearing_embedding
    engine.config.search.dense_limit = 2
    for n in range(10):
        write_note(engine.layout.ghost_notes("beta") / f"b{n}.md", f"beta-{n}", f"Beta {n}",
                   "north filler", ghost="beta")
    write_note(engine.layout.shared_notes / "s.md", "shared-east", "Shared", "east filler")
    engine.reconcile()

    result = engine.search("compass")

    assert not result.lexical_only
    assert _ids(result) == ["shared-east"]
