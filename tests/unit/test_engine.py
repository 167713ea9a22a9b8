"""Tests for KnowledgeEngine: get, write, reference_write, capture, reconcile and repair."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from lorebase.db.models import EntryType, Scope
from lorebase.errors import PathOutsideRoot, ScopeViolation, UnknownEntry, WriteConflict
from lorebase.ingest.parser import split_front_matter


def _front(path: str | Path) -> dict:
    block, _ = split_front_matter(Path(path).read_text(encoding="utf-8"))
    return yaml.safe_load(block)


# ------------------------------------------------------------------
# create
# ------------------------------------------------------------------


def test_shared_note_is_searchable_on_return(engine):
    doc = engine.write(
        "create",
        {"title": "Tokio Runtime", "body": "work stealing scheduler", "tags": ["Rust/Async"]},
    )
    assert doc.entry.scope is Scope.SHARED_NOTE
    assert doc.entry.owner is None
    assert doc.entry.created_by_ghost == "system"
    assert doc.entry.created_by_model == "unknown"
    path = Path(doc.entry.path)
    assert path == engine.layout.shared_notes / "rust" / "async" / "tokio-runtime.md"
    assert _front(path)["tags"] == ["rust/async"]
    assert [h.entry_id for h in engine.search("scheduler").direct] == [doc.entry.id]


def test_ghost_note_is_private(engine):
    doc = engine.write(
        "create", {"scope": "ghost", "title": "Mine", "body": "x", "model": "m1"}, ghost="alpha"
    )
    assert doc.entry.scope is Scope.GHOST_NOTE
    assert doc.entry.owner == "alpha"
    assert doc.entry.created_by_model == "m1"
    with pytest.raises(UnknownEntry):
        engine.get(doc.entry.id)
    with pytest.raises(UnknownEntry):
        engine.get(doc.entry.id, ghost="beta")


def test_ghost_scope_needs_a_ghost(engine):
    with pytest.raises(ScopeViolation):
        engine.write("create", {"scope": "ghost", "title": "X"})


def test_title_clash_gets_id_suffix(engine):
    first = engine.write("create", {"title": "Same"})
    second = engine.write("create", {"title": "Same"})
    assert Path(first.entry.path).name == "same.md"
    assert Path(second.entry.path).name == f"same-{second.entry.id[:8]}.md"


def test_missing_title(engine):
    with pytest.raises(ValueError, match="title"):
        engine.write("create", {"body": "x"})


def test_bad_trust_score(engine):
    with pytest.raises(ValueError, match="trust_score"):
        engine.write("create", {"title": "X", "trust_score": 11})


def test_unknown_archetype_is_dropped(engine):
    doc = engine.write("create", {"title": "X", "archetype": "spaceship"})
    assert doc.entry.archetype is None


def test_unknown_action(engine):
    with pytest.raises(ValueError, match="Unknown write action"):
        engine.write("rename", {"id": "x"})


def test_parent_by_title_is_stored_as_id(engine):
    parent = engine.write("create", {"title": "Tokio Runtime", "body": "work stealing scheduler"})
    child = engine.write(
        "create",
        {"title": "Spawning", "body": "spawning blocking tasks", "parent": "Tokio Runtime"},
    )
    assert child.entry.parent_id == parent.entry.id
    assert _front(child.entry.path)["parent"] == parent.entry.id

    result = engine.search("blocking", limit=1)
    assert [h.entry_id for h in result.direct] == [child.entry.id]
    assert [(h.entry_id, h.via) for h in result.expanded] == [(parent.entry.id, "parent")]


def test_unknown_parent(engine):
    with pytest.raises(UnknownEntry):
        engine.write("create", {"title": "Orphan", "body": "x", "parent": "Nowhere"})


def test_diary_same_day_upserts(engine):
    first = engine.write(
        "create", {"scope": "diary", "date": "2026-02-03", "body": "morning"}, ghost="alpha"
    )
    second = engine.write(
        "create", {"scope": "diary", "date": "2026-02-03", "body": "evening"}, ghost="alpha"
    )
    assert first.entry.id == second.entry.id
    assert second.entry.entry_type is EntryType.DIARY
    assert second.body == "evening"
    assert engine.stats().entries_by_scope == {"ghost_diary": 1}


def test_shared_caller_has_no_diary(engine):
    with pytest.raises(ScopeViolation):
        engine.write("create", {"scope": "diary", "body": "x"})


def test_diary_update_replaces_body(engine):
    doc = engine.write("create", {"scope": "diary", "date": "2026-02-03"}, ghost="alpha")
    updated = engine.write("update", {"id": doc.entry.id, "body": "later"}, ghost="alpha")
    assert updated.body == "later"


# ------------------------------------------------------------------
# update / comment / validate
# ------------------------------------------------------------------


def test_update_bumps_version(engine):
    doc = engine.write("create", {"title": "T", "body": "old"})
    updated = engine.write(
        "update", {"id": doc.entry.id, "body": "fresh text", "expected_version": 1}
    )
    assert updated.entry.version == 2
    assert updated.body.strip() == "fresh text"
    assert engine.search("fresh").direct[0].entry_id == doc.entry.id


def test_stale_version_conflicts(engine):
    doc = engine.write("create", {"title": "T", "body": "old"})
    engine.write("update", {"id": doc.entry.id, "body": "v2"})
    fields = {"id": doc.entry.id, "body": "lost", "expected_version": 1}
    with pytest.raises(WriteConflict) as info:
        engine.write("update", fields)
    assert info.value.current_version == 2
    assert info.value.rejected_fields == fields
    assert info.value.current.body.strip() == "v2"
    assert engine.get(doc.entry.id).body.strip() == "v2"


def test_update_other_ghosts_entry(engine):
    doc = engine.write("create", {"scope": "ghost", "title": "T"}, ghost="alpha")
    with pytest.raises(UnknownEntry):
        engine.write("update", {"id": doc.entry.id, "body": "x"}, ghost="beta")


def test_update_keeps_unlisted_fields(engine):
    doc = engine.write("create", {"title": "T", "tags": ["a"], "trust_score": 7})
    updated = engine.write("update", {"id": doc.entry.id, "title": "T2"})
    assert updated.entry.title == "T2"
    assert updated.entry.tags == ["a"]
    assert updated.entry.trust_score == 7


def test_comment_appends_without_version_bump(engine):
    doc = engine.write("create", {"title": "T"})
    out = engine.write(
        "comment", {"id": doc.entry.id, "text": "looks right", "model": "m2"}, ghost="alpha"
    )
    assert out.entry.version == 1
    [comment] = out.entry.comments
    assert comment["ghost"] == "alpha"
    assert comment["model"] == "m2"
    assert comment["text"] == "looks right"


def test_comment_requires_text(engine):
    doc = engine.write("create", {"title": "T"})
    with pytest.raises(ValueError, match="text"):
        engine.write("comment", {"id": doc.entry.id})


def test_validate_records_validator(engine):
    doc = engine.write("create", {"title": "T"})
    out = engine.write(
        "validate", {"id": doc.entry.id, "model": "m3", "trust_score": 9}, ghost="alpha"
    )
    assert out.entry.version == 1
    assert out.entry.trust_score == 9
    assert out.entry.last_validated_by_ghost == "alpha"
    assert out.entry.last_validated_by_model == "m3"
    assert out.entry.last_validated_at is not None


# ------------------------------------------------------------------
# delete
# ------------------------------------------------------------------


def test_delete_note_unresolves_links(engine):
    target = engine.write("create", {"title": "Target"})
    source = engine.write("create", {"title": "Source", "body": "see [[Target]]"})
    assert engine.get(source.entry.id).links_out[0].target_id == target.entry.id

    assert engine.write("delete", {"id": target.entry.id}) is None
    assert not Path(target.entry.path).exists()
    with pytest.raises(UnknownEntry):
        engine.get(target.entry.id)
    assert engine.get(source.entry.id).links_out[0].target_id is None


def test_delete_topic_removes_members(engine):
    ref = engine.reference_write("tokio", "guide.md", "guide")
    topic = engine.get(ref.topic_id)
    engine.write("delete", {"id": ref.topic_id})
    assert not Path(topic.entry.path).parent.exists()
    with pytest.raises(UnknownEntry):
        engine.get(ref.entry_id)


def test_delete_member_updates_topic(engine):
    keep = engine.reference_write("tokio", "keep.md", "keep")
    drop = engine.reference_write("tokio", "drop.md", "drop")
    engine.write("delete", {"id": drop.entry_id})
    topic = engine.get(keep.topic_id)
    assert [m.path for m in topic.members] == ["keep.md"]
    assert [f["path"] for f in _front(topic.entry.path)["files"]] == ["keep.md"]


def test_delete_unknown(engine):
    with pytest.raises(UnknownEntry):
        engine.write("delete", {"id": "nope"})


# ------------------------------------------------------------------
# reference_write
# ------------------------------------------------------------------


def test_creates_topic_and_member(engine):
    ref = engine.reference_write(
        "Tokio", "docs/guide.md", "# Guide\n\nspawn", source_url="https://tokio.rs",
        max_age_days=14, model="m1",
    )
    assert ref.path == "docs/guide.md"
    assert ref.role == "docs"
    assert ref.source_type == "inline"
    assert ref.source_url == "https://tokio.rs"
    assert ref.max_age_days == 14
    topic = engine.get("Tokio")
    assert topic.entry.entry_type is EntryType.REFERENCE_TOPIC
    assert topic.entry.scope is Scope.SHARED_REFERENCE
    assert [m.entry_id for m in topic.members] == [ref.entry_id]
    assert engine.get("Tokio/docs/guide.md").entry.id == ref.entry_id


def test_code_role_from_extension(engine):
    ref = engine.reference_write("tokio", "src/lib.rs", "pub fn spawn() {}\n")
    assert ref.role == "code"
    assert engine.get(ref.entry_id).entry.entry_type is EntryType.REFERENCE_CODE


def test_replace_member_content(engine):
    engine.reference_write("tokio", "guide.md", "first")
    ref = engine.reference_write("tokio", "guide.md", "second")
    doc = engine.get(ref.entry_id)
    assert doc.body == "second"
    assert len(engine.get(ref.topic_id).members) == 1


def test_content_ref_moves_from_inbox(engine):
    staged = engine.layout.inbox("alpha") / "dump.md"
    staged.parent.mkdir(parents=True, exist_ok=True)
    staged.write_text("staged text")
    ref = engine.reference_write("tokio", "dump.md", content_ref="dump.md", ghost="alpha")
    assert not staged.exists()
    doc = engine.get(ref.entry_id, ghost="alpha")
    assert doc.entry.scope is Scope.GHOST_REFERENCE
    assert doc.body == "staged text"


def test_exactly_one_content_source(engine):
    with pytest.raises(ValueError):
        engine.reference_write("tokio", "a.md")
    with pytest.raises(ValueError):
        engine.reference_write("tokio", "a.md", "x", content_ref="a.md")


def test_missing_staged_file(engine):
    with pytest.raises(FileNotFoundError):
        engine.reference_write("tokio", "a.md", content_ref="missing.md")


def test_traversal_refused(engine):
    with pytest.raises(PathOutsideRoot):
        engine.reference_write("tokio", "../escape.md", "x")


def test_topic_file_reserved(engine):
    with pytest.raises(ValueError, match="reserved"):
        engine.reference_write("tokio", "topic.md", "x")


def test_bad_role(engine):
    with pytest.raises(ValueError, match="role"):
        engine.reference_write("tokio", "a.md", "x", role="binary")


def test_replace_member_keeps_prior_metadata(engine):
    first = engine.reference_write(
        "tokio", "guide.md", "first", source_url="https://tokio.rs", source_type="web",
        max_age_days=30,
    )
    engine.reference_file_set_status("tokio", "guide.md", "problematic")
    ref = engine.reference_write("tokio", "guide.md", "second")
    assert ref.entry_id == first.entry_id
    assert ref.source_url == "https://tokio.rs"
    assert ref.source_type == "web"
    assert ref.max_age_days == 30
    assert ref.status == "problematic"


def test_member_is_read_only_through_write(engine):
    ref = engine.reference_write("tokio", "guide.md", "x")
    with pytest.raises(ValueError, match="reference_write"):
        engine.write("update", {"id": ref.entry_id, "body": "y"})


def test_stale_member(engine, write_note):
    topic_dir = engine.layout.shared_references / "old"
    topic_dir.mkdir(parents=True)
    (topic_dir / "a.md").write_text("a")
    write_note(
        topic_dir / "topic.md", "old-topic", "old", "", entry_type="ReferenceTopic",
        files=["a.md"], max_age_days=1, fetched_at="2020-01-01T00:00:00Z",
    )
    engine.reconcile()
    topic = engine.get("old")
    assert [m.path for m in topic.stale_members] == ["a.md"]
    assert engine.get(topic.members[0].entry_id).stale


# ------------------------------------------------------------------
# reference status / topic listing
# ------------------------------------------------------------------


def test_obsolete_member_leaves_search(engine):
    keep = engine.reference_write("tokio", "keep.md", "scheduler internals")
    old = engine.reference_write("tokio", "old.md", "scheduler internals, old edition")
    assert old.entry_id in {h.entry_id for h in engine.search("scheduler").hits}

    ref = engine.reference_file_set_status("tokio", "old.md", "obsolete", "replaced by keep.md")

    assert ref.status == "obsolete"
    hits = {h.entry_id for h in engine.search("scheduler", limit=20).hits}
    assert keep.entry_id in hits
    assert old.entry_id not in hits
    assert engine.get(old.entry_id).reference.status == "obsolete"
    topic = engine.get("tokio")
    assert "> **obsolete** `old.md` (system, " in topic.body
    assert topic.body.rstrip().endswith("replaced by keep.md")


def test_problematic_member_score_is_halved(engine):
    engine.reference_write("tokio", "a.md", "scheduler notes")
    flaky = engine.reference_write("tokio", "b.md", "scheduler notes too")

    def score() -> float:
        hits = engine.search("scheduler", limit=20).direct
        return next(h.score for h in hits if h.entry_id == flaky.entry_id)

    before = score()
    engine.reference_file_set_status("tokio", "b.md", "problematic")
    assert score() == pytest.approx(before * 0.5)

    engine.reference_file_set_status("tokio", "b.md", "active")
    assert score() == pytest.approx(before)


def test_set_status_rejects_unknown_status(engine):
    engine.reference_write("tokio", "a.md", "x")
    with pytest.raises(ValueError, match="status"):
        engine.reference_file_set_status("tokio", "a.md", "retired")


def test_set_status_unknown_file_or_topic(engine):
    engine.reference_write("tokio", "a.md", "x")
    with pytest.raises(UnknownEntry):
        engine.reference_file_set_status("tokio", "missing.md", "obsolete")
    with pytest.raises(UnknownEntry):
        engine.reference_file_set_status("serde", "a.md", "obsolete")


def test_set_status_on_other_ghosts_topic(engine):
    engine.reference_write("private", "a.md", "x", ghost="alpha")
    with pytest.raises(UnknownEntry):
        engine.reference_file_set_status("private", "a.md", "obsolete", ghost="beta")


def test_topic_list_hides_fully_obsolete_topics(engine):
    engine.reference_write("tokio", "a.md", "x")
    engine.reference_write("tokio", "b.md", "y")
    engine.reference_file_set_status("tokio", "b.md", "problematic")
    engine.reference_write("legacy", "old.md", "z")
    engine.reference_file_set_status("legacy", "old.md", "obsolete")

    listed = engine.topic_list()
    assert [s.topic.title for s in listed] == ["tokio"]
    assert (listed[0].file_count, listed[0].problematic, listed[0].status) == (2, 1, "active")

    everything = engine.topic_list(include_obsolete=True)
    assert [(s.topic.title, s.status) for s in everything] == [
        ("legacy", "obsolete"),
        ("tokio", "active"),
    ]


def test_topic_list_respects_visibility(engine):
    engine.reference_write("shared", "a.md", "x")
    engine.reference_write("mine", "a.md", "x", ghost="alpha")
    assert [s.topic.title for s in engine.topic_list()] == ["shared"]
    assert [s.topic.title for s in engine.topic_list(ghost="alpha")] == ["mine", "shared"]


def test_topic_list_reports_stale_topics(engine, write_note):
    topic_dir = engine.layout.shared_references / "old"
    topic_dir.mkdir(parents=True)
    (topic_dir / "a.md").write_text("a")
    write_note(
        topic_dir / "topic.md", "old-topic", "old", "", entry_type="ReferenceTopic",
        files=["a.md"], max_age_days=1, fetched_at="2020-01-01T00:00:00Z",
    )
    engine.reconcile()
    [summary] = engine.topic_list()
    assert (summary.stale, summary.status) == (1, "stale")


# ------------------------------------------------------------------
# get / capture / stats
# ------------------------------------------------------------------


def test_title_prefers_own_entry(engine):
    engine.write("create", {"title": "Plan"})
    own = engine.write("create", {"scope": "ghost", "title": "Plan"}, ghost="alpha")
    assert engine.get("Plan", ghost="alpha").entry.id == own.entry.id
    assert engine.get("Plan", ghost="beta").entry.owner is None


def test_links_in_hide_private_sources(engine):
    engine.write("create", {"title": "Shared"})
    engine.write("create", {"scope": "ghost", "title": "P", "body": "[[Shared]]"}, ghost="alpha")
    assert engine.get("Shared").links_in == []
    assert len(engine.get("Shared", ghost="alpha").links_in) == 1


def test_get_unknown(engine):
    with pytest.raises(UnknownEntry):
        engine.get("nothing")


def test_capture_lands_in_inbox_unindexed(engine):
    path = engine.capture("Remember the tokio thing\nmore", ghost="alpha", source="chat")
    assert path.parent == engine.layout.ghost_inbox("alpha")
    assert path.name.endswith("-remember-the-tokio-thing.md")
    assert _front(path)["source"] == "chat"
    engine.reconcile()
    assert engine.stats().entries == 0


def test_stats(engine):
    engine.write("create", {"title": "A", "body": "[[Nowhere]]"})
    stats = engine.stats()
    assert stats.entries_by_scope == {"shared_note": 1}
    assert stats.chunks == 1
    assert stats.pending_embeddings == 0
    assert stats.unresolved_links == 1
    assert stats.dimensions == 16


# ------------------------------------------------------------------
# reconcile / repair
# ------------------------------------------------------------------


def test_reconcile_picks_up_edits_made_outside_the_engine(engine):
    doc = engine.write("create", {"title": "Edited", "body": "original wording"})
    path = Path(doc.entry.path)
    path.write_text(path.read_text(encoding="utf-8").replace("original", "revised"), encoding="utf-8")

    report = engine.reconcile()

    assert report.indexed == 1
    assert [h.entry_id for h in engine.search("revised").direct] == [doc.entry.id]


def test_repair_drops_entry_whose_file_vanished(engine):
    doc = engine.write("create", {"title": "Gone", "body": "soon missing"})
    Path(doc.entry.path).unlink()

    report = engine.repair([doc.entry.id])

    assert report.repaired == 1
    with pytest.raises(UnknownEntry):
        engine.get(doc.entry.id)
