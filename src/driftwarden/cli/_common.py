"""Shared CLI plumbing: service lifetime, error rendering and exit codes."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import click
from rich.console import Console

from driftwarden.core.constants import ExitCode
from driftwarden.core.exceptions import (
    BlockedTransitionError,
    ConcurrentModificationError,
    ConfigError,
    ConfirmationRequiredError,
    DriftwardenError,
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ResolutionConflictError,
)

if TYPE_CHECKING:
    from driftwarden.core.services import Services

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)


def exit_code_for(exc: DriftwardenError) -> ExitCode:
    if isinstance(exc, ConfigError):
        return ExitCode.CONFIG_ERROR
    if isinstance(exc, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(exc, ConcurrentModificationError | ResolutionConflictError):
        return ExitCode.CONFLICT
    if isinstance(
        exc,
        BlockedTransitionError | InvalidTransitionError | PolicyViolationError | ConfirmationRequiredError,
    ):
        return ExitCode.BLOCKED
    return ExitCode.ERROR


def fail(exc: DriftwardenError, as_json: bool = False) -> None:
    """Print *exc* with its reasons and exit with the mapped code."""
    if as_json:
        click.echo(json.dumps(exc.to_dict(), indent=2))
    else:
        err_console.print(f"[red]{exc.code}:[/red] {exc.message}")
        for reason in exc.to_dict()["reasons"]:
            ref = f" [dim]({reason['ref']})[/dim]" if reason.get("ref") else ""
            err_console.print(f"  - [yellow]{reason.get('type', '')}[/yellow] {reason.get('description', '')}{ref}")
    sys.exit(int(exit_code_for(exc)))


def run_async(coro_fn: Callable[[], Awaitable[T]]) -> T:
    return asyncio.run(coro_fn())


@contextmanager
def open_services(ctx: click.Context, as_json: bool = False) -> Iterator[Services]:
    """Build ``Services`` from the root ``--config`` option; errors exit cleanly."""
    from driftwarden.core.config import load_config, load_config_or_default
    from driftwarden.core.services import Services

    config_path = ctx.find_root().obj.get("config_path") if ctx.find_root().obj else None
    try:
        config = load_config(config_path) if config_path else load_config_or_default()
        services = Services(config)
    except DriftwardenError as exc:
        fail(exc, as_json)
        return

    try:
        yield services
    except DriftwardenError as exc:
        fail(exc, as_json)
    finally:
        services.close()


def emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))
