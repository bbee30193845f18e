"""CLI entry point for playbook-memory."""

from pathlib import Path

import click

from cli.commands import context, mark, reflect, similar, stale, top, undo
from cli.logging_config import setup_logging
from cli.utils import get_config, release_locks_on_exit
from playbook.lock import LockRegistry


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ./.playbook/config.yaml, then ~/.playbook-memory/config.yaml)",
)
@click.pass_context
def cli(ctx, verbose: bool, json_logs: bool, config_path: Path | None):
    """Playbook memory - rules learned from coding sessions."""
    config = get_config(config_path)
    level = "DEBUG" if verbose else config.logging.level
    setup_logging(
        json_mode=json_logs,
        level=level,
        log_file=config.paths.log_file if config.logging.to_file else None,
    )

    locks = LockRegistry()
    release_locks_on_exit(locks)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["locks"] = locks


cli.add_command(reflect)
cli.add_command(mark)
cli.add_command(top)
cli.add_command(stale)
cli.add_command(context)
cli.add_command(similar)
cli.add_command(undo)


if __name__ == "__main__":
    cli()
