"""Tests for graph expansion around direct hits."""

from __future__ import annotations

import pytest


@pytest.fixture
def graph(engine, write_note, fake_embed):
    fake_embed.side_effect = ConnectionError("offline")
    notes = engine.layout.shared_notes
    write_note(notes / "hub.md", "hub", "Hub", "tokio scheduler, see [[Spoke]]", tags=["rust"])
    write_note(notes / "spoke.md", "spoke", "Spoke", "plain words, next [[Rim]]")
    write_note(notes / "rim.md", "rim", "Rim", "far away")
    write_note(notes / "sibling.md", "sibling", "Sibling", "unrelated", tags=["rust"])
    write_note(notes / "fan.md", "fan", "Fan", "I point at [[Hub]]")
    write_note(engine.layout.ghost_notes("alpha") / "secret.md", "secret", "Secret",
               "hidden", tags=["rust"], ghost="alpha")
    engine.reconcile()
    return engine


def _via(result) -> dict[str, str]:
    return {h.entry_id: h.via for h in result.expanded}


def test_expansion_follows_tags_and_links(graph):
    result = graph.search("tokio")
    assert [h.entry_id for h in result.direct] == ["hub"]
    assert _via(result) == {"sibling": "tag", "spoke": "link", "fan": "link"}
    assert all(h.score == 0.0 for h in result.expanded)


def test_expansion_respects_visibility(graph):
    assert "secret" not in _via(graph.search("tokio"))
    assert _via(graph.search("tokio", ghost="alpha"))["secret"] == "tag"
    assert "secret" not in _via(graph.search("tokio", ghost="beta"))


def test_expansion_never_repeats_direct_hits(graph):
    result = graph.search("tokio plain", limit=10)
    direct = {h.entry_id for h in result.direct}
    assert {"hub", "spoke"} <= direct
    assert not direct & set(_via(result))


def test_graph_max_caps_expansions(graph):
    graph.config.search.graph_max = 1
    assert len(graph.search("tokio").expanded) == 1


def test_graph_disabled(graph):
    graph.config.search.graph_max = 0
    assert graph.search("tokio").expanded == []


def test_deeper_expansion_reaches_second_hop(graph):
    assert "rim" not in _via(graph.search("tokio"))
    graph.config.search.graph_depth = 2
    assert _via(graph.search("tokio"))["rim"] == "link"


def test_member_expands_to_topic(engine, fake_embed):
    fake_embed.side_effect = ConnectionError("offline")
    ref = engine.reference_write("tokio", "guide.md", "spawn tasks")
    result = engine.search("spawn")
    assert [h.entry_id for h in result.direct] == [ref.entry_id]
    assert _via(result) == {ref.topic_id: "parent"}
