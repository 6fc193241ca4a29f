"""CLI commands: ``driftwarden issue create|list|show|transition|activate``."""

from __future__ import annotations

import click
from rich.table import Table

from driftwarden.cli._common import console, emit_json, open_services, run_async


def _parse_meta(pairs: tuple[str, ...]) -> dict[str, str]:
    meta: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--meta")
        meta[key] = value
    return meta


@click.group("issue")
def issue_group() -> None:
    """Create, inspect and move issues through the lifecycle."""


@issue_group.command("create")
@click.argument("title")
@click.option("--label", "-l", "labels", multiple=True, help="Label (repeatable).")
@click.option("--github", "github_ref", default="", help="owner/repo#N, or N with github.repo configured.")
@click.option("--meta", "meta", multiple=True, help="Metadata key=value (repeatable).")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def issue_create(
    ctx: click.Context, title: str, labels: tuple[str, ...], github_ref: str, meta: tuple[str, ...], as_json: bool
) -> None:
    """Create an issue in CREATED."""
    metadata = _parse_meta(meta)
    with open_services(ctx, as_json) as svc:
        if github_ref.isdigit() and svc.config.github.repo:
            github_ref = f"{svc.config.github.repo}#{github_ref}"
        issue = svc.engine.create_issue(title, labels=list(labels), metadata=metadata, github_ref=github_ref)
        if as_json:
            emit_json(issue.to_dict())
        else:
            console.print(f"[green]Created[/green] {issue.short_id}  {issue.title}  [dim]{issue.id}[/dim]")


@issue_group.command("list")
@click.option("--status", default="", help="Only issues in this state.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def issue_list(ctx: click.Context, status: str, as_json: bool) -> None:
    """List issues."""
    from driftwarden.core.lifecycle.models import Issue

    with open_services(ctx, as_json) as svc:
        issues = [Issue.from_row(r) for r in svc.db.list_issues(status.upper())]
        if as_json:
            emit_json([i.to_dict() for i in issues])
            return
        table = Table(title="Issues")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Title")
        table.add_column("GitHub")
        for issue in issues:
            marker = " *" if issue.is_active else ""
            table.add_row(issue.short_id + marker, issue.status.value, issue.title, issue.github_ref or "-")
        console.print(table)


@issue_group.command("show")
@click.argument("issue_ref")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def issue_show(ctx: click.Context, issue_ref: str, as_json: bool) -> None:
    """Show an issue and the states it may move to."""
    with open_services(ctx, as_json) as svc:
        issue = svc.engine.get_issue(issue_ref)
        targets = [s.value for s in svc.engine.valid_transitions(issue.status)]
        if as_json:
            emit_json({**issue.to_dict(), "valid_transitions": targets})
            return
        console.print(f"[bold]{issue.title}[/bold]  [dim]{issue.id}[/dim]")
        console.print(f"  status:   {issue.status.value} (v{issue.version}){'  [cyan]active[/cyan]' if issue.is_active else ''}")
        console.print(f"  labels:   {', '.join(issue.labels) or '-'}")
        console.print(f"  github:   {issue.github_ref or '-'}")
        console.print(f"  next:     {', '.join(targets) or '(terminal)'}")


@issue_group.command("transition")
@click.argument("issue_ref")
@click.argument("to_state")
@click.option("--reason", default="", help="Why the issue moves.")
@click.option("--key", "idempotency_key", default=None, help="Idempotency key for safe retries.")
@click.option("--actor", default="cli", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def issue_transition(
    ctx: click.Context,
    issue_ref: str,
    to_state: str,
    reason: str,
    idempotency_key: str | None,
    actor: str,
    as_json: bool,
) -> None:
    """Move an issue to TO_STATE. Exits 3 with reasons when blocked."""
    with open_services(ctx, as_json) as svc:
        outcome = run_async(
            lambda: svc.engine.apply_transition(
                issue_ref, to_state.upper(), reason=reason, actor=actor, idempotency_key=idempotency_key
            )
        )
        if as_json:
            emit_json(outcome.to_dict())
        else:
            note = " [dim](replayed)[/dim]" if outcome.replayed else ""
            console.print(
                f"[green]{outcome.from_state.value} → {outcome.to_state.value}[/green]"
                f"  v{outcome.issue.version}{note}"
            )


@issue_group.command("activate")
@click.argument("issue_ref")
@click.option("--actor", default="cli", show_default=True)
@click.pass_context
def issue_activate(ctx: click.Context, issue_ref: str, actor: str) -> None:
    """Make ISSUE_REF the single active issue."""
    with open_services(ctx) as svc:
        issue = svc.engine.activate(issue_ref, actor=actor)
        console.print(f"[green]Active:[/green] {issue.short_id}  {issue.title}")
