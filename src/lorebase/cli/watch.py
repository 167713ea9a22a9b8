"""lorebase watch: reconcile once, then follow file changes until Ctrl-C."""

from __future__ import annotations

import threading

import typer

from lorebase.cli.common import DataDirOpt, console, load_engine
from lorebase.cli.errors import err_corrupt_index
from lorebase.cli.reconcile import render_report
from lorebase.errors import CorruptIndex


def watch_cmd(data_dir: DataDirOpt = None) -> None:
    """Watch the shared and ghost roots and reindex changed files."""
    engine = load_engine(data_dir)
    with engine:
        try:
            render_report(engine.reconcile(), title="Initial reconcile")
        except CorruptIndex as exc:
            console.print(err_corrupt_index(exc.entry_ids))
            raise typer.Exit(1) from None

        engine.watch()
        interval = engine.config.reconcile.interval_seconds
        console.print(
            f"[green]✓[/] Watching {engine.layout.data_root} "
            f"(full reconcile every {interval}s). Press Ctrl-C to stop."
        )
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            console.print("\nStopping watcher…")
