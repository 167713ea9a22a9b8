"""lorebase reconcile: bring the index in line with the files on disk."""

from __future__ import annotations

import typer
from rich.markup import escape
from rich.table import Table

from lorebase.cli.common import DataDirOpt, GhostOpt, check_ghost, console, load_engine
from lorebase.cli.errors import err_corrupt_index, warn_rejections
from lorebase.errors import CorruptIndex
from lorebase.ingest.reconciler import ReconcileReport


def reconcile_cmd(ghost: GhostOpt = None, data_dir: DataDirOpt = None) -> None:
    """Scan the shared roots (and the ghost's, if given) and index what changed."""
    ghost = check_ghost(ghost)
    engine = load_engine(data_dir)
    with engine:
        try:
            report = engine.reconcile(ghost)
        except CorruptIndex as exc:
            console.print(err_corrupt_index(exc.entry_ids))
            raise typer.Exit(1) from None
    render_report(report)


def render_report(report: ReconcileReport, title: str = "Reconcile") -> None:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    rows = [
        ("Scanned", report.scanned),
        ("Unchanged", report.unchanged),
        ("Indexed", report.indexed),
        ("Deleted", report.deleted),
        ("Embedded chunks", report.embedded),
        ("Embedding failures", report.embedding_failures),
        ("Repaired", report.repaired),
        ("Rejected", len(report.rejected)),
        ("Scope violations", len(report.violations)),
    ]
    for label, value in rows:
        style = "yellow" if value and label in ("Rejected", "Embedding failures") else None
        table.add_row(label, str(value), style=style)
    console.print(table)

    for rejection in report.rejected:
        console.print(f"  [red]✗[/] {escape(rejection['path'])}: {escape(rejection['reason'])}")
    for violation in report.violations:
        console.print(f"  [yellow]![/] {escape(violation)}")
    for warning in report.warnings:
        console.print(f"  [dim]·[/] {escape(warning)}")
    if report.rejected:
        console.print(warn_rejections(len(report.rejected)))
    if report.writes == 0:
        console.print("[green]✓[/] Index already up to date.")
