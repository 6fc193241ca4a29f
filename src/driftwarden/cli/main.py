"""
Driftwarden CLI entry point.

Commands:
  driftwarden issue create|list|show|transition|activate
  driftwarden evidence put|list
  driftwarden incident open
  driftwarden drift detect|show|list|resolve
  driftwarden playbook list|run|resume|status
  driftwarden audit verify|export
  driftwarden lawbook validate <file>
  driftwarden serve
  driftwarden version

Exit codes: 0 ok, 1 error, 2 config error, 3 blocked, 4 conflict, 5 not found.
"""

from __future__ import annotations

from pathlib import Path

import click

from driftwarden import __version__
from driftwarden.cli._common import console, err_console

# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="driftwarden %(version)s")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $DRIFTWARDEN_CONFIG or the platform data dir).",
)
@click.option("--log-level", default=None, help="Log level for structured logging (default WARNING).")
@click.option("--log-json", is_flag=True, default=False, help="Emit JSON log lines.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None, log_json: bool) -> None:
    """Driftwarden: issue lifecycle, GitHub drift detection and remediation playbooks."""
    from driftwarden.core.logging import configure_logging

    configure_logging(level=log_level or "WARNING", json_output=log_json)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level
    ctx.obj["log_json"] = log_json


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


@cli.command()
def version() -> None:
    """Show the Driftwarden version."""
    console.print(f"driftwarden {__version__}")


# ---------------------------------------------------------------------------
# lawbook
# ---------------------------------------------------------------------------


@cli.group()
def lawbook() -> None:
    """Validate remediation lawbooks."""


@lawbook.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def lawbook_validate(path: Path) -> None:
    """Check a lawbook YAML file; exits 1 on errors."""
    from driftwarden.core.policy.parser import validate_lawbook_file

    errors = validate_lawbook_file(path)
    if errors:
        for error in errors:
            err_console.print(f"[red]✗[/red] {error}")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] {path} is valid")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config: 127.0.0.1).")
@click.option("--port", type=int, default=None, help="Port (default from config: 8790).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API server (blocking)."""
    from driftwarden.api.app import start_server
    from driftwarden.cli._common import fail
    from driftwarden.core.config import load_config, load_config_or_default
    from driftwarden.core.exceptions import DriftwardenError
    from driftwarden.core.logging import configure_from_config

    config_path = ctx.obj.get("config_path")
    try:
        config = load_config(config_path) if config_path else load_config_or_default()
    except DriftwardenError as exc:
        fail(exc)
        return
    if not ctx.obj.get("log_json"):
        configure_from_config(config.logging, ctx.obj.get("log_level"))
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    console.print(f"[bold]Driftwarden API[/bold] on http://{bind_host}:{bind_port}")
    start_server(host=bind_host, port=bind_port, config=config)


# ---------------------------------------------------------------------------
# Subcommand groups
# ---------------------------------------------------------------------------

from driftwarden.cli._audit_cmd import audit_group  # noqa: E402
from driftwarden.cli._drift import drift_group  # noqa: E402
from driftwarden.cli._evidence import evidence_group  # noqa: E402
from driftwarden.cli._issue import issue_group  # noqa: E402
from driftwarden.cli._playbook import incident_group, playbook_group  # noqa: E402

cli.add_command(issue_group)
cli.add_command(evidence_group)
cli.add_command(incident_group)
cli.add_command(drift_group)
cli.add_command(playbook_group)
cli.add_command(audit_group)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
