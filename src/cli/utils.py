"""Shared CLI utilities."""

import atexit
import sys
from pathlib import Path

import click
import structlog
from rich.console import Console

from playbook.lock import LockRegistry

console = Console()
logger = structlog.get_logger()


def get_config(config_path: Path | None = None):
    """Load the typed config or exit with a readable message."""
    from cli.config import load_config_model

    try:
        return load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)


def release_locks_on_exit(registry: LockRegistry) -> None:
    """Remove any lock directories still held when the interpreter exits."""

    def _release() -> None:
        released = registry.release_all()
        if released:
            logger.warning("cli.locks_released_on_exit", count=released)

    atexit.register(_release)


def get_components(ctx: click.Context) -> dict:
    """Config and lock registry set up by the command group."""
    return ctx.ensure_object(dict)
