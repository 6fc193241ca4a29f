"""CLI commands: ``driftwarden incident ...`` and ``driftwarden playbook ...``."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.table import Table

from driftwarden.cli._common import console, emit_json, open_services, run_async

_STATUS_STYLE = {
    "PLANNED": "cyan",
    "RUNNING": "yellow",
    "SUCCEEDED": "green",
    "FAILED": "red",
    "SKIPPED": "dim",
}


def _parse_inputs(inputs_json: str, pairs: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if inputs_json:
        try:
            data = json.loads(inputs_json)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--inputs") from exc
        if not isinstance(data, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--inputs")
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--input")
        data[key] = value
    return data


def _print_steps(steps) -> None:
    table = Table()
    table.add_column("Step")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Note")
    for step in steps:
        style = _STATUS_STYLE.get(step.status.value, "white")
        note = ""
        if step.error:
            note = f"{step.error.get('code', '')}: {step.error.get('message', '')}"
        elif step.best_effort:
            note = "best effort"
        table.add_row(step.step_id, step.action_type, f"[{style}]{step.status.value}[/{style}]", note)
    console.print(table)


# ---------------------------------------------------------------------------
# incident
# ---------------------------------------------------------------------------


@click.group("incident")
def incident_group() -> None:
    """Record incidents that playbooks run against."""


@incident_group.command("open")
@click.argument("incident_key")
@click.option("--title", default="")
@click.option("--category", default="", help="e.g. ECS_TASK_CRASHLOOP, DEPLOY_VERIFICATION_FAILED.")
@click.option("--severity", default="P2", show_default=True)
@click.option("--issue", "issue_ref", default=None, help="Issue this incident tracks.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def incident_open(
    ctx: click.Context,
    incident_key: str,
    title: str,
    category: str,
    severity: str,
    issue_ref: str | None,
    as_json: bool,
) -> None:
    """Open (or update) the incident with INCIDENT_KEY."""
    with open_services(ctx, as_json) as svc:
        issue_id = svc.engine.get_issue(issue_ref).id if issue_ref else None
        incident = svc.runner.open_incident(
            incident_key, title=title, category=category, severity=severity, issue_id=issue_id
        )
        if as_json:
            emit_json(incident.to_dict())
        else:
            console.print(f"[green]Incident[/green] {incident.incident_key}  [dim]{incident.id}[/dim]")


# ---------------------------------------------------------------------------
# playbook
# ---------------------------------------------------------------------------


@click.group("playbook")
def playbook_group() -> None:
    """List and run remediation playbooks."""


@playbook_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def playbook_list(ctx: click.Context, as_json: bool) -> None:
    """List registered playbooks."""
    with open_services(ctx, as_json) as svc:
        playbooks = svc.registry.list_playbooks()
        if as_json:
            emit_json([p.model_dump(mode="json") for p in playbooks])
            return
        table = Table(title="Playbooks")
        table.add_column("ID")
        table.add_column("Version")
        table.add_column("Categories")
        table.add_column("Steps", justify="right")
        for p in playbooks:
            table.add_row(p.id, p.version, ", ".join(p.categories) or "any", str(len(p.steps)))
        console.print(table)


@playbook_group.command("run")
@click.argument("incident_ref")
@click.argument("playbook_id")
@click.option("--inputs", "inputs_json", default="", help="Inputs as a JSON object.")
@click.option("--input", "input_pairs", multiple=True, help="Input key=value (repeatable).")
@click.option("--plan-only", is_flag=True, default=False, help="Plan the run without executing it.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def playbook_run(
    ctx: click.Context,
    incident_ref: str,
    playbook_id: str,
    inputs_json: str,
    input_pairs: tuple[str, ...],
    plan_only: bool,
    as_json: bool,
) -> None:
    """Plan and execute PLAYBOOK_ID for INCIDENT_REF.

    Running the same incident, playbook and inputs again replays the
    existing run instead of starting a new one.
    """
    inputs = _parse_inputs(inputs_json, input_pairs)
    with open_services(ctx, as_json) as svc:
        if plan_only:
            planned = run_async(lambda: svc.runner.plan(incident_ref, playbook_id, inputs))
            if as_json:
                emit_json(planned.to_dict())
                return
            style = _STATUS_STYLE.get(planned.status.value, "white")
            console.print(f"[{style}]{planned.status.value}[/{style}] {planned.run.id}  [dim]{planned.run.run_key}[/dim]")
            if planned.skip_reason:
                console.print(f"  skip reason: {planned.skip_reason}")
            for reason in planned.reasons:
                console.print(f"  - {reason.description}")
            return

        result = run_async(lambda: svc.runner.plan_and_execute(incident_ref, playbook_id, inputs))
        if as_json:
            emit_json(result.to_dict())
            return
        style = _STATUS_STYLE.get(result.status.value, "white")
        replay = " [dim](replayed)[/dim]" if result.replayed else ""
        console.print(f"[{style}]{result.status.value}[/{style}] {result.run.id}{replay}")
        skip = result.skip_reason or result.run.skip_reason
        if skip:
            console.print(f"  skip reason: {skip}")
            for reason in result.run.result.get("reasons", []):
                console.print(f"  - {reason.get('description', '')}")
        if result.steps:
            _print_steps(result.steps)


@playbook_group.command("resume")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def playbook_resume(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Continue an interrupted run from its first unfinished step."""
    with open_services(ctx, as_json) as svc:
        result = run_async(lambda: svc.runner.resume(run_id))
        if as_json:
            emit_json(result.to_dict())
            return
        style = _STATUS_STYLE.get(result.status.value, "white")
        console.print(f"[{style}]{result.status.value}[/{style}] {result.run.id}")
        _print_steps(result.steps)


@playbook_group.command("status")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def playbook_status(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Show a run and its steps."""
    with open_services(ctx, as_json) as svc:
        run = svc.runner.get_run(run_id)
        steps = svc.runner.get_steps(run_id)
        if as_json:
            emit_json({**run.to_dict(), "steps": [s.to_dict() for s in steps]})
            return
        style = _STATUS_STYLE.get(run.status.value, "white")
        console.print(
            f"[{style}]{run.status.value}[/{style}] {run.playbook_id} v{run.playbook_version}"
            f"  attempt {run.attempt}  lawbook {run.lawbook_version}"
        )
        if steps:
            _print_steps(steps)
