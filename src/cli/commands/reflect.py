"""Reflect on recent sessions and merge the proposed changes into the playbooks."""

import sys

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from llm.base import LLMError
from playbook.lock import LockTimeoutError
from playbook.models import delta_to_dict

console = Console()


def _describe(delta: dict) -> str:
    if delta["type"] == "add":
        return delta["bullet"]["content"]
    if delta["type"] == "replace":
        return f"{delta['bulletId']} -> {delta['newContent']}"
    if delta["type"] == "merge":
        return f"{', '.join(delta['bulletIds'])} -> {delta['mergedContent']}"
    return delta.get("bulletId", "")


@click.command()
@click.option("--days", type=int, default=None, help="Look back this many days for sessions")
@click.option("--max-sessions", type=int, default=None, help="Max sessions to reflect on")
@click.option("--session", "session_path", default=None, help="Reflect on one session file")
@click.option("--workspace", default=None, help="Workspace whose ledger and project playbook to use")
@click.option("--dry-run", is_flag=True, help="Show proposed changes without saving")
@click.pass_context
def reflect(ctx, days, max_sessions, session_path, workspace, dry_run):
    """Extract rules from recent sessions into the playbook."""
    from reflection.orchestrator import orchestrate

    c = get_components(ctx)

    def _progress(event: dict) -> None:
        if event["phase"] == "session_start":
            console.print(f"[dim]({event['index']}/{event['total_sessions']})[/] {event['session_path']}")
        elif event["phase"] == "session_error":
            console.print(f"  [red]failed:[/] {event['error']}")

    try:
        outcome = orchestrate(
            c["config"],
            locks=c["locks"],
            max_sessions=max_sessions,
            session=session_path,
            dry_run=dry_run,
            days=days,
            workspace=workspace,
            on_progress=_progress,
        )
    except (LockTimeoutError, LLMError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    if dry_run and outcome.dry_run_deltas:
        table = Table(title="Proposed changes (dry run)")
        table.add_column("Type", width=10)
        table.add_column("Change")
        for delta in outcome.dry_run_deltas:
            d = delta_to_dict(delta)
            table.add_row(d["type"], _describe(d)[:100])
        console.print(table)

    console.print(
        f"Sessions processed: {outcome.sessions_processed}, deltas: {outcome.deltas_generated}"
    )
    for label, result in (("global", outcome.global_result), ("project", outcome.repo_result)):
        if result is None:
            continue
        console.print(
            f"  {label}: {result.applied} applied, {result.skipped} skipped, "
            f"{len(result.inversions)} inverted, {result.pruned} pruned"
        )
        for conflict in result.conflicts:
            console.print(f"  [yellow]conflict[/] {conflict.conflicting_bullet_id}: {conflict.reason}")
    for err in outcome.errors:
        console.print(f"[red]{err}[/]")
