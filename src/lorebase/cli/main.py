"""lorebase CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from lorebase.cli.common import configure_logging
from lorebase.cli.get import get_cmd
from lorebase.cli.reconcile import reconcile_cmd
from lorebase.cli.repair import repair_cmd
from lorebase.cli.search import search_cmd
from lorebase.cli.status import status_cmd
from lorebase.cli.watch import watch_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("lorebase")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lorebase {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="lorebase",
    help=(
        "lorebase: file-backed knowledge store for agents.\n\n"
        "  lorebase reconcile  Index the Markdown corpus.\n"
        "  lorebase search     Hybrid search over what a ghost can see."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log per-file decisions (DEBUG)."),
    ] = False,
) -> None:
    """lorebase: file-backed knowledge store for agents."""
    configure_logging(verbose)


app.command("reconcile")(reconcile_cmd)
app.command("search")(search_cmd)
app.command("get")(get_cmd)
app.command("watch")(watch_cmd)
app.command("status")(status_cmd)
app.command("repair")(repair_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed lorebase version."""
    typer.echo(f"lorebase {_installed_version()}")


if __name__ == "__main__":
    app()
