"""lorebase rich error messages.

Each message says what went wrong and what to run or change next.

Usage:
    from lorebase.cli.errors import err_unknown_entry
    console.print(err_unknown_entry("Rust async", None))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_config(message: str) -> str:
    """Config file could not be loaded."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix lorebase.yaml (or ~/.lorebase/config.yaml) and retry."
    )


def err_bad_ghost(name: str, reason: str) -> str:
    return (
        f"[red]Error:[/] Invalid ghost name '{name}': {reason}\n"
        "  Use letters, digits, '-' or '_' (no path separators)."
    )


def err_unknown_entry(key: str, ghost: str | None) -> str:
    """Nothing visible matches *key*."""
    who = f"ghost '{ghost}'" if ghost else "a shared-only caller"
    return (
        f"[yellow]Not found:[/] no entry '{key}' is visible to {who}.\n"
        "  Run:  lorebase search <words>  to find the id or title."
    )


def err_bad_choice(option: str, value: str, choices: list[str]) -> str:
    return (
        f"[red]Error:[/] Unknown {option} '{value}'.\n"
        f"  Choose from: {', '.join(choices)}"
    )


def err_corrupt_index(entry_ids: list[str]) -> str:
    """Integrity check failed after reconcile."""
    shown = ", ".join(entry_ids[:5]) + (" …" if len(entry_ids) > 5 else "")
    return (
        f"[red]Error:[/] Index inconsistent for {len(entry_ids)} entr"
        f"{'y' if len(entry_ids) == 1 else 'ies'}: {shown}\n"
        "  Run:  lorebase repair"
    )


def warn_lexical_only(model: str) -> str:
    """Dense search was skipped."""
    return (
        f"[yellow]⚠[/] Embedding model '{model}' unavailable; results are lexical only.\n"
        "  Check the provider (lorebase.yaml: embedding.api_base), then run:  lorebase reconcile"
    )


def warn_rejections(count: int) -> str:
    return (
        f"[yellow]⚠[/] {count} file{'s' if count != 1 else ''} rejected by the indexer.\n"
        "  Fix the front matter listed above; rejected files are retried every pass."
    )
