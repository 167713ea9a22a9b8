"""lorebase status command.

Shows index statistics: entries per scope, chunks, pending embeddings,
unresolved links, rejected files, and the active vector table.
"""

from __future__ import annotations

from rich.panel import Panel
from rich.table import Table

from lorebase.cli.common import DataDirOpt, console, load_engine
from lorebase.db.store import IndexStats


def status_cmd(data_dir: DataDirOpt = None) -> None:
    """Show corpus location and index statistics."""
    engine = load_engine(data_dir)
    with engine:
        stats = engine.stats()
        index_path = engine.store.db_path
        data_root = engine.layout.data_root
        model = engine.config.embedding.model

    size = ""
    if index_path.exists():
        size = f" ({index_path.stat().st_size / (1024 * 1024):.1f} MB)"
    console.print(
        Panel(
            f"Data root:  {data_root}\n"
            f"Index:      {index_path}{size}\n"
            f"Model:      {model}",
            title="[bold]Corpus[/]",
            expand=False,
        )
    )
    _show_index_panel(stats)


def _show_index_panel(stats: IndexStats) -> None:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Scope")
    table.add_column("Entries", justify="right")
    for scope, count in sorted(stats.entries_by_scope.items()):
        table.add_row(scope, f"{count:,}")
    table.add_row("[bold]total[/]", f"[bold]{stats.entries:,}[/]")
    console.print(Panel(table, title="[bold]Entries[/]", expand=False))

    vec = (
        f"{stats.vec_table} ({stats.dimensions} dims)"
        if stats.vec_table
        else "[yellow]none yet (lexical search only)[/]"
    )
    pending = (
        f"[yellow]{stats.pending_embeddings:,}[/]"
        if stats.pending_embeddings
        else "[green]0[/]"
    )
    lines = [
        f"Chunks:             [bold]{stats.chunks:,}[/]",
        f"Pending embeddings: {pending}",
        f"Unresolved links:   {stats.unresolved_links:,}",
        f"Rejected files:     {stats.rejections:,}",
        f"Vector table:       {vec}",
        f"Last reconcile:     {stats.last_reconcile_at or '[dim]never[/]'}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Index[/]", expand=False))
