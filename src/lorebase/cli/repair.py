"""lorebase repair: rebuild inconsistent entries from their source files."""

from __future__ import annotations

from typing import Annotated

import typer

from lorebase.cli.common import DataDirOpt, console, load_engine
from lorebase.cli.reconcile import render_report


def repair_cmd(
    entry_ids: Annotated[
        list[str] | None,
        typer.Argument(help="Entry ids to rebuild (default: every inconsistent entry)."),
    ] = None,
    data_dir: DataDirOpt = None,
) -> None:
    """Check index integrity and rebuild the affected entries."""
    engine = load_engine(data_dir)
    with engine:
        problems = engine.reconciler.check_integrity() if not entry_ids else list(entry_ids)
        if not problems and not engine.store.stray_rows():
            console.print("[green]✓[/] Index is consistent. Nothing to repair.")
            return
        report = engine.repair(problems or None)
    render_report(report, title="Repair")
