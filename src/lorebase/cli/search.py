"""lorebase search: hybrid (BM25 + dense) search with graph expansion."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, TypeVar

import typer
from rich.markup import escape
from rich.table import Table

from lorebase.cli.common import DataDirOpt, GhostOpt, check_ghost, console, load_engine
from lorebase.cli.errors import err_bad_choice, warn_lexical_only
from lorebase.db.models import Archetype, Category, Scope
from lorebase.query.results import SearchResult

E = TypeVar("E", bound=Enum)


def _choice(enum_cls: type[E], value: str, option: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        console.print(err_bad_choice(option, value, [m.value for m in enum_cls]))
        raise typer.Exit(1) from None


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search text.")],
    ghost: GhostOpt = None,
    scope: Annotated[
        list[str] | None,
        typer.Option("--scope", "-s", help="Restrict to scope (repeatable)."),
    ] = None,
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="notes | references | diary."),
    ] = None,
    topic: Annotated[
        str | None,
        typer.Option("--topic", help="Reference topic id or title."),
    ] = None,
    archetype: Annotated[
        str | None,
        typer.Option("--archetype", "-a", help="Only entries of this archetype."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Maximum direct hits."),
    ] = None,
    data_dir: DataDirOpt = None,
) -> None:
    """Search the entries visible to GHOST."""
    ghost = check_ghost(ghost)
    scopes = [_choice(Scope, s, "scope") for s in scope] if scope else None
    cat = _choice(Category, category, "category") if category else None
    arch = _choice(Archetype, archetype, "archetype") if archetype else None

    engine = load_engine(data_dir)
    with engine:
        result = engine.search(
            query,
            ghost=ghost,
            scopes=scopes,
            category=cat,
            topic=topic,
            archetype=arch,
            limit=limit,
        )
    if result.lexical_only:
        console.print(warn_lexical_only(engine.config.embedding.model))
    render_result(result)


def render_result(result: SearchResult) -> None:
    if not result.hits:
        console.print("[dim]No results.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Title")
    table.add_column("Scope")
    table.add_column("Score", justify="right")
    table.add_column("Snippet", overflow="fold")
    for rank, hit in enumerate(result.direct, start=1):
        table.add_row(
            str(rank),
            f"[bold]{escape(hit.title)}[/]\n[dim]{hit.entry_id}[/]",
            hit.scope.value + (f"\n{hit.owner}" if hit.owner else ""),
            f"{hit.score:.4f}",
            escape(hit.snippet),
        )
    for hit in result.expanded:
        table.add_row(
            "+",
            f"{escape(hit.title)}\n[dim]{hit.entry_id}[/]",
            hit.scope.value + (f"\n{hit.owner}" if hit.owner else ""),
            f"[dim]via {hit.via}[/]",
            escape(hit.snippet),
            style="dim",
        )
    console.print(table)
