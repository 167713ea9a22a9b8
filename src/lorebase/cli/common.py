"""Shared option types and engine loading for lorebase commands."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from lorebase.cli.errors import err_bad_ghost, err_config
from lorebase.config import ConfigError, load_config
from lorebase.engine import KnowledgeEngine
from lorebase.paths import validate_ghost_name

console = Console()
err_console = Console(stderr=True)

GhostOpt = Annotated[
    str | None,
    typer.Option("--ghost", "-g", help="Act as this ghost (omit for a shared-only caller)."),
]
DataDirOpt = Annotated[
    Path | None,
    typer.Option("--data-dir", help="Corpus root (overrides config and LOREBASE_DATA_DIR)."),
]


def configure_logging(verbose: bool) -> None:
    """Route library logging to stderr through rich, once per process."""
    root = logging.getLogger("lorebase")
    level = logging.DEBUG if verbose else logging.INFO
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=err_console, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
    for handler in root.handlers:
        handler.setLevel(level)


def check_ghost(ghost: str | None) -> str | None:
    if ghost is None:
        return None
    try:
        return validate_ghost_name(ghost)
    except ValueError as exc:
        console.print(err_bad_ghost(ghost, str(exc)))
        raise typer.Exit(1) from None


def load_engine(data_dir: Path | None = None) -> KnowledgeEngine:
    """Build an (unopened) engine from config, applying ``--data-dir``."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None
    if data_dir is not None:
        cfg.paths.data_root = data_dir.expanduser()
        cfg.paths.index_path = None
    return KnowledgeEngine(cfg)
