"""
Structured logging configuration for Driftwarden.

Uses structlog to provide machine-parseable, context-rich log output.
Every engine logs snake_case event names with key/value context
(issue_id, run_key, detection_id) so a single grep follows one entity
through transitions, drift checks and remediation runs.

Setup:
    Call ``configure_logging()`` once at process startup.  Every module then
    uses::

        import structlog
        logger = structlog.get_logger()

    Bound loggers carry context automatically::

        log = logger.bind(run_key="inc-1:restart-service:ab12...")
        log.info("step_started", step_id="restart")

String values pass through the same secret scrubber as audit payloads, so
a GitHub token echoed back in an error message never reaches a log line.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

from driftwarden.core.audit.writer import redact

if TYPE_CHECKING:
    from driftwarden.core.config import LoggingConfig

# Attribute marking the stdlib handler this module installs
_HANDLER_TAG = "_driftwarden_handler"

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def scrub_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: redact secret-shaped substrings in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact(value, limit=len(value))
    return event_dict


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog + stdlib logging for the process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: If True, emit JSON lines for log aggregation.
                     If False, emit coloured output when stderr is a TTY.

    Reconfiguring replaces the handler installed by the previous call, so
    the current ``sys.stderr`` is always the one written to.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        scrub_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared_processors,
        )
    )
    setattr(handler, _HANDLER_TAG, True)

    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_config(config: LoggingConfig, level_override: str | None = None) -> None:
    """Apply the ``[logging]`` config section; an explicit level wins."""
    configure_logging(
        level=level_override or config.level,
        json_output=config.format == "json",
    )
