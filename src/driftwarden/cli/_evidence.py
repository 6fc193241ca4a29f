"""CLI commands: ``driftwarden evidence put|list``."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from driftwarden.cli._common import console, emit_json, open_services


@click.group("evidence")
def evidence_group() -> None:
    """Record and inspect evidence facts."""


@evidence_group.command("put")
@click.argument("entity_id")
@click.argument("kind")
@click.option("--payload", default="", help="Fact payload as a JSON object.")
@click.option(
    "--file",
    "payload_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the JSON payload from a file.",
)
@click.option("--observed-at", default=None, help="ISO timestamp of the observation.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def evidence_put(
    ctx: click.Context,
    entity_id: str,
    kind: str,
    payload: str,
    payload_file: Path | None,
    observed_at: str | None,
    as_json: bool,
) -> None:
    """Record one fact about ENTITY_ID (an issue id, incident id or GitHub ref).

    Re-putting an identical fact is a no-op.
    """
    from driftwarden.core.evidence.reader import put_evidence_fact

    raw = payload_file.read_text(encoding="utf-8") if payload_file else (payload or "{}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"payload is not valid JSON: {exc}", param_hint="--payload") from exc

    with open_services(ctx, as_json) as svc:
        fact, inserted = put_evidence_fact(svc.db, entity_id, kind, data, observed_at=observed_at)
        if as_json:
            emit_json({"inserted": inserted, "fact": fact.to_dict()})
        elif inserted:
            console.print(f"[green]Recorded[/green] {kind} for {entity_id}  [dim]{fact.content_hash[:12]}[/dim]")
        else:
            console.print(f"[dim]Already recorded[/dim] {kind} for {entity_id}")


@evidence_group.command("list")
@click.argument("entity_id")
@click.option("--kind", "kinds", multiple=True, help="Only these kinds (repeatable).")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.pass_context
def evidence_list(ctx: click.Context, entity_id: str, kinds: tuple[str, ...], as_json: bool) -> None:
    """List the facts recorded for ENTITY_ID."""
    from driftwarden.core.evidence.models import EvidenceFact

    with open_services(ctx, as_json) as svc:
        facts = [EvidenceFact.from_row(r) for r in svc.db.list_evidence_facts(entity_id, list(kinds) or None)]
        if as_json:
            emit_json([f.to_dict() for f in facts])
            return
        table = Table(title=f"Evidence for {entity_id}")
        table.add_column("Kind")
        table.add_column("Observed")
        table.add_column("Payload")
        for fact in facts:
            table.add_row(fact.kind, fact.observed_at, json.dumps(fact.payload, sort_keys=True))
        console.print(table)
