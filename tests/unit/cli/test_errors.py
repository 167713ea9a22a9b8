"""Tests for lorebase rich error messages."""

from __future__ import annotations

import pytest

from lorebase.cli.errors import (
    err_bad_choice,
    err_bad_ghost,
    err_config,
    err_corrupt_index,
    err_unknown_entry,
    warn_lexical_only,
    warn_rejections,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _has_action(msg: str) -> bool:
    """Every message must tell the user what to do next."""
    lower = msg.lower()
    return any(kw in lower for kw in ["run:", "use ", "choose from", "fix ", "check "])


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def test_err_config_includes_reason() -> None:
    msg = err_config("reconcile.workers must be >= 1, got 0")
    assert "reconcile.workers" in msg
    assert "lorebase.yaml" in msg


def test_err_bad_ghost_names_ghost() -> None:
    msg = err_bad_ghost("../x", "Invalid ghost name '../x'")
    assert "../x" in msg


def test_err_unknown_entry_shared_caller() -> None:
    msg = err_unknown_entry("Rust async", None)
    assert "Rust async" in msg
    assert "shared-only caller" in msg
    assert "lorebase search" in msg


def test_err_unknown_entry_names_ghost() -> None:
    assert "ghost 'alpha'" in err_unknown_entry("x", "alpha")


def test_err_bad_choice_lists_choices() -> None:
    msg = err_bad_choice("category", "music", ["notes", "references", "diary"])
    assert "music" in msg
    assert "notes, references, diary" in msg


def test_err_corrupt_index_singular() -> None:
    msg = err_corrupt_index(["a"])
    assert "1 entry:" in msg
    assert "lorebase repair" in msg


def test_err_corrupt_index_truncates_long_lists() -> None:
    msg = err_corrupt_index([f"e{i}" for i in range(8)])
    assert "8 entries" in msg
    assert "e4" in msg
    assert "e5" not in msg
    assert "…" in msg


def test_warn_lexical_only_names_model() -> None:
    msg = warn_lexical_only("ollama/qwen3-embedding:8b")
    assert "ollama/qwen3-embedding:8b" in msg
    assert "lorebase reconcile" in msg


@pytest.mark.parametrize("count,word", [(1, "1 file rejected"), (3, "3 files rejected")])
def test_warn_rejections_plural(count: int, word: str) -> None:
    assert word in warn_rejections(count)


@pytest.mark.parametrize(
    "msg",
    [
        err_config("bad"),
        err_bad_ghost("x y", "bad"),
        err_unknown_entry("k", None),
        err_bad_choice("scope", "x", ["a"]),
        err_corrupt_index(["a"]),
        warn_lexical_only("m"),
        warn_rejections(2),
    ],
)
def test_every_message_has_action(msg: str) -> None:
    assert _has_action(msg)
