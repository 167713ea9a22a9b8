"""Tests for the entry parser."""

from __future__ import annotations

from datetime import date

import pytest

from lorebase.db.models import Archetype, EntryType
from lorebase.errors import ParseFailure
from lorebase.ingest.parser import (
    FrontMatter,
    content_hash,
    diary_date,
    diary_entry_id,
    normalize_tags,
    parse_diary,
    parse_entry,
    render_entry,
    split_front_matter,
)

_VALID = b"""---
id: 3f2c
title: Rust async
created_at: 2026-01-01T00:00:00Z
trust_score: 7
created_by: {ghost: alpha, model: m1}
entry_type: Note
archetype: concept
tags: [Rust/Async, rust/async, " tokio "]
custom_field: keep me
---
Body with [[Tokio]].
"""


def _with(**fields) -> bytes:
    lines = ["---"]
    base = {
        "id": "x1",
        "title": "T",
        "created_at": "2026-01-01T00:00:00Z",
        "trust_score": "5",
        "created_by": "{ghost: alpha, model: m1}",
    }
    base.update({k: v for k, v in fields.items() if v is not None})
    for key in [k for k, v in fields.items() if v is None]:
        base.pop(key, None)
    lines += [f"{k}: {v}" for k, v in base.items()]
    lines += ["---", "body"]
    return "\n".join(lines).encode()


def test_parse_valid_entry():
    parsed = parse_entry(_VALID, "note.md")
    front = parsed.front
    assert front.id == "3f2c"
    assert front.title == "Rust async"
    assert front.trust_score == 7
    assert (front.created_by_ghost, front.created_by_model) == ("alpha", "m1")
    assert front.entry_type is EntryType.NOTE
    assert front.archetype is Archetype.CONCEPT
    assert front.extra == {"custom_field": "keep me"}
    assert parsed.body == "Body with [[Tokio]].\n"
    assert parsed.content_hash == content_hash(_VALID)


def test_parse_normalizes_tags():
    assert normalize_tags(["Rust/Async", "rust//async/", " tokio ", ""]) == ["rust/async", "tokio"]


def test_unknown_keys_survive_render():
    parsed = parse_entry(_VALID, "note.md")
    again = parse_entry(render_entry(parsed.front, parsed.body).encode(), "note.md")
    assert again.front.extra == {"custom_field": "keep me"}
    assert again.body.strip() == "Body with [[Tokio]]."


def test_missing_front_matter():
    with pytest.raises(ParseFailure, match="missing front matter"):
        parse_entry(b"just text", "x.md")


@pytest.mark.parametrize("field", ["id", "title", "created_at", "trust_score", "created_by"])
def test_missing_required_field(field):
    with pytest.raises(ParseFailure, match=field):
        parse_entry(_with(**{field: None}), "x.md")


@pytest.mark.parametrize("value", ["11", "-1", "high", "true"])
def test_trust_score_out_of_range(value):
    with pytest.raises(ParseFailure, match="trust_score"):
        parse_entry(_with(trust_score=value), "x.md")


def test_invalid_yaml():
    with pytest.raises(ParseFailure, match="invalid YAML"):
        parse_entry(b"---\ntitle: [unclosed\n---\nbody", "x.md")


def test_not_utf8():
    with pytest.raises(ParseFailure, match="UTF-8"):
        parse_entry(b"---\ntitle: \xff\n---\n", "x.md")


def test_unknown_archetype_is_soft_warning():
    parsed = parse_entry(_with(archetype="wizard"), "x.md")
    assert parsed.front.archetype is None
    assert any("wizard" in w for w in parsed.warnings)


def test_unknown_entry_type_rejected():
    with pytest.raises(ParseFailure, match="entry_type"):
        parse_entry(_with(entry_type="Poem"), "x.md")


def test_yaml_date_coerced_to_timestamp():
    parsed = parse_entry(_with(created_at="2026-03-04"), "x.md")
    assert parsed.front.created_at == "2026-03-04T00:00:00Z"


def test_split_front_matter_without_block():
    assert split_front_matter("plain") == (None, "plain")


# ------------------------------------------------------------------
# Diary
# ------------------------------------------------------------------


def test_diary_id_is_stable_per_owner_and_date():
    day = date(2026, 1, 5)
    assert diary_entry_id("alpha", day) == diary_entry_id("alpha", day)
    assert diary_entry_id("alpha", day) != diary_entry_id("beta", day)


def test_parse_diary_without_front_matter():
    parsed = parse_diary(b"Slept well.", "diary/2026-01-05.md", "alpha")
    assert parsed.front.id == diary_entry_id("alpha", date(2026, 1, 5))
    assert parsed.front.title == "2026-01-05"
    assert parsed.front.entry_type is EntryType.DIARY
    assert parsed.body == "Slept well."


def test_parse_diary_bad_name():
    with pytest.raises(ParseFailure, match="YYYY-MM-DD"):
        parse_diary(b"x", "diary/monday.md", "alpha")
    assert diary_date("2026-02-30.md") is None


def test_render_entry_layout():
    front = FrontMatter(
        id="a", title="A", created_at="2026-01-01T00:00:00Z", trust_score=5,
        created_by_ghost="alpha", created_by_model="m1",
    )
    text = render_entry(front, "hello")
    assert text.startswith("---\nid: a\ntitle: A\n")
    assert text.endswith("---\n\nhello\n")
