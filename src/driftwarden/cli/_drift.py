"""CLI commands: ``driftwarden drift detect|show|list|resolve``."""

from __future__ import annotations

import json

import click
from rich.table import Table

from driftwarden.cli._common import console, emit_json, open_services, run_async

_SEVERITY_STYLE = {
    "NONE": "green",
    "LOW": "cyan",
    "MEDIUM": "yellow",
    "HIGH": "red",
    "CRITICAL": "bold red",
}


def _print_detection(result) -> None:
    style = _SEVERITY_STYLE.get(result.severity.value, "white")
    if not result.drift_detected:
        console.print(f"[green]No drift[/green] for {result.entity_id}  [dim]{result.id}[/dim]")
        return
    console.print(
        f"[{style}]{result.severity.value}[/{style}] drift on {result.entity_id}: "
        f"{', '.join(t.value for t in result.drift_types)}  [dim]{result.id}[/dim]"
    )
    table = Table(title="Suggestions")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Direction")
    table.add_column("Actions")
    table.add_column("Risk")
    table.add_column("Conf.", justify="right")
    for s in result.suggestions:
        actions = ", ".join(a.kind.value for a in s.actions) or "(manual)"
        table.add_row(s.id, s.drift_type.value, s.direction.value, actions, s.risk_level.value, f"{s.confidence:.2f}")
    console.print(table)
    if result.resolved:
        console.print("[dim]resolved[/dim]")


@click.group("drift")
def drift_group() -> None:
    """Detect and resolve drift between issues and GitHub."""


@drift_group.command("detect")
@click.argument("issue_ref")
@click.option("--stored", is_flag=True, default=False, help="Compare against the stored snapshot, not the API.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def drift_detect(ctx: click.Context, issue_ref: str, stored: bool, as_json: bool) -> None:
    """Compare ISSUE_REF with GitHub and record the detection. Never writes to GitHub."""
    with open_services(ctx, as_json) as svc:
        service = svc.stored_drift if stored else svc.drift
        result = run_async(lambda: service.detect(issue_ref))
        if as_json:
            emit_json(result.model_dump(mode="json"))
        else:
            _print_detection(result)


@drift_group.command("show")
@click.argument("detection_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def drift_show(ctx: click.Context, detection_id: str, as_json: bool) -> None:
    """Show a stored detection and its resolution."""
    with open_services(ctx, as_json) as svc:
        result = svc.drift.get_detection(detection_id)
        if as_json:
            emit_json(result.model_dump(mode="json"))
        else:
            _print_detection(result)


@drift_group.command("list")
@click.argument("issue_ref")
@click.option("--limit", default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def drift_list(ctx: click.Context, issue_ref: str, limit: int, as_json: bool) -> None:
    """List recent detections for ISSUE_REF."""
    with open_services(ctx, as_json) as svc:
        results = svc.drift.list_detections(issue_ref, limit)
        if as_json:
            emit_json([r.model_dump(mode="json") for r in results])
            return
        table = Table(title=f"Drift detections for {issue_ref}")
        table.add_column("ID")
        table.add_column("Detected")
        table.add_column("Severity")
        table.add_column("Types")
        table.add_column("Resolved")
        for r in results:
            table.add_row(
                r.id,
                r.detected_at.isoformat(),
                r.severity.value,
                ", ".join(t.value for t in r.drift_types) or "-",
                "yes" if r.resolved else "no",
            )
        console.print(table)


@drift_group.command("resolve")
@click.argument("detection_id")
@click.option("--suggestion", "suggestion_id", default=None, help="Suggestion id to apply.")
@click.option(
    "--action",
    "manual_actions",
    multiple=True,
    help='Manual override action as JSON, e.g. \'{"kind": "SET_STATUS", "params": {"to_state": "DONE"}}\'.',
)
@click.option("--yes", "confirmation", is_flag=True, default=False, help="Confirm the state change.")
@click.option("--actor", default="cli", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def drift_resolve(
    ctx: click.Context,
    detection_id: str,
    suggestion_id: str | None,
    manual_actions: tuple[str, ...],
    confirmation: bool,
    actor: str,
    as_json: bool,
) -> None:
    """Apply one suggestion (or manual actions) to a detection. Requires --yes."""
    actions = None
    if manual_actions:
        try:
            actions = [json.loads(a) for a in manual_actions]
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"action is not valid JSON: {exc}", param_hint="--action") from exc

    with open_services(ctx, as_json) as svc:
        resolution = run_async(
            lambda: svc.drift.resolve(
                detection_id, suggestion_id, actions, confirmation=confirmation, actor=actor
            )
        )
        if as_json:
            emit_json(resolution.model_dump(mode="json"))
            return
        console.print(f"[green]Resolved[/green] {detection_id}")
        for entry in resolution.outcome.get("applied", []):
            state = "applied" if entry.get("applied", True) else "already applied"
            console.print(f"  - {entry['kind']}: {state}")
