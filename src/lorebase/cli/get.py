"""lorebase get: show one entry with its links and reference members."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel

from lorebase.cli.common import DataDirOpt, GhostOpt, check_ghost, console, load_engine
from lorebase.cli.errors import err_unknown_entry
from lorebase.engine import EntryDocument
from lorebase.errors import UnknownEntry


def get_cmd(
    key: Annotated[str, typer.Argument(help="Entry id, title, or <topic>/<file>.")],
    ghost: GhostOpt = None,
    data_dir: DataDirOpt = None,
) -> None:
    """Print an entry visible to GHOST."""
    ghost = check_ghost(ghost)
    engine = load_engine(data_dir)
    with engine:
        try:
            doc = engine.get(key, ghost=ghost)
        except UnknownEntry:
            console.print(err_unknown_entry(key, ghost))
            raise typer.Exit(1) from None
    render_document(doc)


def render_document(doc: EntryDocument) -> None:
    entry = doc.entry
    lines = [
        f"ID:       {entry.id}",
        f"Type:     {entry.entry_type.value}"
        + (f"  ({entry.archetype.value})" if entry.archetype else ""),
        f"Scope:    {entry.scope.value}" + (f"  owner={entry.owner}" if entry.owner else ""),
        f"Trust:    {entry.trust_score}   Version: {entry.version}",
        f"Created:  {entry.created_at} by {entry.created_by_ghost} ({entry.created_by_model})",
    ]
    if entry.last_validated_at:
        lines.append(
            f"Checked:  {entry.last_validated_at} by {entry.last_validated_by_ghost}"
        )
    if entry.tags:
        lines.append(f"Tags:     {', '.join(entry.tags)}")
    if doc.reference is not None:
        ref = doc.reference
        stale = " [yellow](stale)[/]" if doc.stale else ""
        lines.append(f"Role:     {ref.role}  status={ref.status}{stale}")
        if ref.source_url:
            lines.append(f"Source:   {ref.source_url}")
    lines.append(f"File:     {entry.path}")
    console.print(Panel("\n".join(lines), title=f"[bold]{escape(entry.title)}[/]", expand=False))

    if doc.body.strip():
        console.print(Markdown(doc.body))

    if doc.members:
        stale_paths = {m.path for m in doc.stale_members}
        console.print("[bold]Files[/]")
        for member in doc.members:
            flag = " [yellow](stale)[/]" if member.path in stale_paths else ""
            console.print(f"  {member.path}  [dim]{member.role}, {member.status}[/]{flag}")
    if doc.links_out:
        console.print("[bold]Links out[/]")
        for link in doc.links_out:
            target = link.target_id or "[yellow]unresolved[/]"
            console.print(f"  {escape('[[' + link.target_title + ']]')} → {target}")
    if doc.links_in:
        console.print("[bold]Linked from[/]")
        for link in doc.links_in:
            console.print(f"  {link.source_id}")
    for comment in entry.comments:
        console.print(
            f"[dim]{comment.get('at', '')} {comment.get('ghost', '')}:[/] {escape(str(comment.get('text', '')))}"
        )
