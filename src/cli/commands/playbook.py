"""Playbook inspection and feedback commands: mark, top, stale, context, similar, undo."""

import sys

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from playbook.lock import LockTimeoutError
from playbook.models import HarmfulDelta, HelpfulDelta, get_active_bullets, utcnow
from playbook.scoring import get_effective_score, is_stale
from playbook.context import DEFAULT_CONTEXT_LIMIT, SIMILAR_SCOPES, build_context, find_similar
from playbook.store import edit_bullet, load_merged_playbook

console = Console()


@click.command()
@click.argument("bullet_id")
@click.option("--helpful/--harmful", default=True, help="Kind of feedback to record")
@click.option("--session", "session_path", default=None, help="Session the feedback came from")
@click.option("--reason", default=None, help="Why the rule helped or hurt")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def mark(ctx, bullet_id, helpful, session_path, reason, workspace):
    """Record helpful or harmful feedback on a rule."""
    from reflection.orchestrator import merge_into_stores

    c = get_components(ctx)
    if helpful:
        delta = HelpfulDelta(bullet_id=bullet_id, source_session=session_path, context=reason, timestamp=utcnow())
    else:
        delta = HarmfulDelta(bullet_id=bullet_id, source_session=session_path, reason=reason, timestamp=utcnow())

    try:
        global_result, repo_result = merge_into_stores(
            c["config"], [delta], workspace=workspace, locks=c["locks"], update_last_reflection=False
        )
    except LockTimeoutError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    result = repo_result or global_result
    if result is None or result.applied == 0:
        reason_text = result.decision_log[0].reason if result and result.decision_log else "not applied"
        console.print(f"[yellow]{bullet_id}:[/] {reason_text}")
        sys.exit(1)

    kind = "helpful" if helpful else "harmful"
    console.print(f"[green]Marked[/] {bullet_id} as {kind}")
    for inversion in result.inversions:
        console.print(f"  [yellow]inverted[/] -> {inversion.anti_pattern_id}: {inversion.anti_pattern_content}")
    if result.pruned:
        console.print(f"  [yellow]deprecated[/] {result.pruned} rule(s)")


@click.command()
@click.option("-n", "--limit", default=10, help="How many rules to show")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def top(ctx, limit, workspace):
    """Rank active rules by effective score."""
    c = get_components(ctx)
    config = c["config"]
    playbook = load_merged_playbook(config, workspace)
    now = utcnow()

    ranked = sorted(
        ((get_effective_score(b, config, now), b) for b in get_active_bullets(playbook)),
        key=lambda pair: pair[0],
        reverse=True,
    )[:limit]
    if not ranked:
        console.print("No active rules.")
        return

    table = Table(title="Top rules")
    table.add_column("ID", style="dim")
    table.add_column("Score", justify="right", width=7)
    table.add_column("Maturity", width=11)
    table.add_column("Rule")
    table.add_column("+/-", width=7)
    for score, b in ranked:
        table.add_row(
            b.id, f"{score:.2f}", b.maturity.value, b.content[:80], f"{b.helpful_count}/{b.harmful_count}"
        )
    console.print(table)


@click.command()
@click.option("--days", type=int, default=None, help="Days without feedback before a rule is stale")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def stale(ctx, days, workspace):
    """List active rules that have not received feedback recently."""
    c = get_components(ctx)
    config = c["config"]
    stale_days = days if days is not None else config.scoring.stale_days
    now = utcnow()

    bullets = [
        b for b in get_active_bullets(load_merged_playbook(config, workspace)) if is_stale(b, stale_days, now)
    ]
    if not bullets:
        console.print(f"No rules without feedback for more than {stale_days} days.")
        return

    table = Table(title=f"Stale rules (> {stale_days} days)")
    table.add_column("ID", style="dim")
    table.add_column("Category", width=14)
    table.add_column("Rule")
    table.add_column("Last feedback", width=12)
    for b in bullets:
        last = max((e.timestamp for e in b.feedback_events), default=None)
        table.add_row(b.id, b.category, b.content[:80], last.date().isoformat() if last else "never")
    console.print(table)


@click.command()
@click.argument("task")
@click.option("-n", "--limit", default=DEFAULT_CONTEXT_LIMIT, help="Max rules to include")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def context(ctx, task, limit, workspace):
    """Show the rules most relevant to a task."""
    c = get_components(ctx)
    config = c["config"]
    result = build_context(load_merged_playbook(config, workspace), task, config, limit=limit, workspace=workspace)

    for warning in result.warnings:
        console.print(f"[red]Warning:[/] {warning}")
    if not result.rules and not result.anti_patterns:
        console.print(f"No rules match: {', '.join(result.keywords) or task}")
        return

    if result.rules:
        console.print("[bold]Rules[/]")
        for item in result.rules:
            console.print(f"  [dim]{item.bullet.id}[/] ({item.final_score:.1f}) {item.bullet.content}")
    if result.anti_patterns:
        console.print("[bold]Avoid[/]")
        for item in result.anti_patterns:
            console.print(f"  [dim]{item.bullet.id}[/] ({item.final_score:.1f}) {item.bullet.content}")


@click.command()
@click.argument("query")
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), default=0.7, help="Minimum token overlap")
@click.option("-n", "--limit", default=5, help="Max matches to show")
@click.option("--scope", type=click.Choice(SIMILAR_SCOPES), default="all", help="Which bullets to search")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def similar(ctx, query, threshold, limit, scope, workspace):
    """Find existing rules that read like QUERY."""
    c = get_components(ctx)
    try:
        matches = find_similar(
            load_merged_playbook(c["config"], workspace), query, threshold=threshold, limit=limit, scope=scope
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    if not matches:
        console.print(f"No rules at or above {threshold:.2f} similarity.")
        return

    table = Table(title="Similar rules")
    table.add_column("ID", style="dim")
    table.add_column("Similarity", justify="right", width=10)
    table.add_column("Scope", width=9)
    table.add_column("Rule")
    for m in matches:
        table.add_row(m.bullet.id, f"{m.similarity:.2f}", m.bullet.scope.value, m.bullet.content[:80])
    console.print(table)


@click.command()
@click.argument("bullet_id")
@click.option("--feedback", "last_feedback", is_flag=True, help="Remove the most recent feedback event")
@click.option("--hard", is_flag=True, help="Delete the rule outright")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--workspace", default=None, help="Workspace whose project playbook to include")
@click.pass_context
def undo(ctx, bullet_id, last_feedback, hard, yes, workspace):
    """Restore a deprecated rule, drop its last feedback, or delete it."""
    c = get_components(ctx)
    if last_feedback and hard:
        console.print("[red]Error:[/] --feedback and --hard cannot be combined")
        sys.exit(1)

    if hard and not yes:
        if not click.confirm(f"Delete {bullet_id} permanently?"):
            return

    now = utcnow()

    def edit(playbook):
        if hard:
            return playbook.remove(bullet_id)
        if last_feedback:
            return playbook.undo_last_feedback(bullet_id, now) or False
        return playbook.undeprecate(bullet_id, now)

    try:
        result = edit_bullet(c["config"], bullet_id, edit, workspace=workspace, locks=c["locks"])
    except LockTimeoutError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    if result is None:
        console.print(f"[red]Not found:[/] {bullet_id}")
        sys.exit(1)
    if not result:
        console.print(f"[yellow]{bullet_id}:[/] nothing to undo")
        sys.exit(1)

    if hard:
        console.print(f"[green]Deleted:[/] {bullet_id}")
    elif last_feedback:
        console.print(f"[green]Removed[/] last {result.type.value} feedback from {bullet_id}")
    else:
        console.print(f"[green]Restored[/] {bullet_id} as an active candidate")
