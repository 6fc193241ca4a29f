"""
CLI commands: ``driftwarden audit verify`` and ``driftwarden audit export``.

Verifies hash chain integrity and exports events from the SQLite audit log.
"""

from __future__ import annotations

import csv
import io
import json
import sys

import click

from driftwarden.cli._common import emit_json, open_services


@click.group("audit")
def audit_group() -> None:
    """Inspect and verify the audit event log."""


@audit_group.command("verify")
@click.option(
    "--subject",
    "subject_id",
    default="",
    help="Verify only events for one subject (issue, run or detection id).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output result as JSON.")
@click.pass_context
def audit_verify(ctx: click.Context, subject_id: str, as_json: bool) -> None:
    """Verify hash chain integrity of the audit event log.

    Recomputes each event's content hash and chain hash and checks that
    prev_hash links form an unbroken chain. Exits 0 if valid, 1 if broken.
    """
    from driftwarden.core.audit.verify import format_verify_result, verify_audit_chain

    with open_services(ctx, as_json) as svc:
        result = verify_audit_chain(svc.db, subject_id=subject_id or None)
        if as_json:
            emit_json(result.to_dict())
        else:
            click.echo(format_verify_result(result, subject_id=subject_id or None))
    sys.exit(0 if result.valid else 1)


_EXPORT_COLUMNS = [
    "seq",
    "id",
    "event_type",
    "subject_id",
    "payload",
    "created_at",
    "prev_hash",
    "chain_hash",
]


@audit_group.command("export")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["jsonl", "json", "csv"]),
    default="jsonl",
    show_default=True,
    help="Output format.",
)
@click.option("--subject", "subject_id", default="", help="Filter by subject id.")
@click.option("--limit", default=0, help="Maximum number of events (0 = all).")
@click.pass_context
def audit_export(ctx: click.Context, fmt: str, subject_id: str, limit: int) -> None:
    """Export audit events in seq order.

    Writes events to stdout. Default format is JSONL (one JSON object per line).
    """
    from driftwarden.core.audit.writer import list_events

    with open_services(ctx) as svc:
        events = list_events(svc.db, subject_id, limit)

    if fmt == "jsonl":
        for event in events:
            click.echo(json.dumps(event, separators=(",", ":"), sort_keys=True))
    elif fmt == "json":
        click.echo(json.dumps(events, indent=2, sort_keys=True))
    else:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=_EXPORT_COLUMNS)
        writer.writeheader()
        for event in events:
            writer.writerow({**event, "payload": json.dumps(event["payload"], sort_keys=True)})
        click.echo(buf.getvalue(), nl=False)
