"""
Step action handlers.

Each ``ActionType`` maps to one async handler taking a ``StepContext`` and
returning an output mapping. A handler signals a failed external call with
``ExternalActionError``; ``transient=True`` lets the runner retry it.

Every handler runs through the ``ActionLedger`` under the step's
idempotency key, so a step replayed after a crash returns the recorded
output instead of repeating the side effect.

The default handler records the action against the incident without
calling out anywhere. Deployments register real handlers for the actions
they operate, e.g. ``WebhookNotifier`` for ``NOTIFY_SLACK``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from driftwarden.core.evidence.models import EvidenceFact
from driftwarden.core.exceptions import ExternalActionError
from driftwarden.core.mirror.ledger import ActionLedger
from driftwarden.core.mirror.models import ActionResult, ExternalAction
from driftwarden.core.remediation.models import ActionType, Incident
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


@dataclass(frozen=True)
class StepContext:
    """Everything a handler may read. Handlers never touch the database."""

    run_id: str
    run_key: str
    step_id: str
    action_type: ActionType
    idempotency_key: str
    incident: Incident
    lawbook_version: str
    inputs: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    evidence: tuple[EvidenceFact, ...] = ()
    prior_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    """Outputs of earlier steps in this run, by step id."""


Handler = Callable[[StepContext], Awaitable[dict[str, Any]]]


async def record_only(ctx: StepContext) -> dict[str, Any]:
    """Default handler: acknowledges the action without any side effect."""
    return {
        "step_id": ctx.step_id,
        "action_type": ctx.action_type.value,
        "executed": True,
        "message": f"Recorded {ctx.action_type.value} for incident {ctx.incident.incident_key}",
    }


class ActionDispatcher:
    """Routes steps to handlers and applies each at most once."""

    def __init__(self, db: Database, default: Handler = record_only) -> None:
        self._ledger = ActionLedger(db)
        self._default = default
        self._handlers: dict[ActionType, Handler] = {}

    def register(self, action_type: ActionType | str, handler: Handler) -> None:
        self._handlers[ActionType(action_type)] = handler

    def handler_for(self, action_type: ActionType) -> Handler:
        return self._handlers.get(action_type, self._default)

    async def dispatch(self, ctx: StepContext) -> ActionResult:
        handler = self.handler_for(ctx.action_type)
        action = ExternalAction(
            action_type=ctx.action_type.value,
            target=ctx.incident.incident_key,
            params=dict(ctx.params),
        )
        return await self._ledger.apply_once(action, ctx.idempotency_key, lambda: handler(ctx))


class WebhookNotifier:
    """
    Posts a JSON message to an incoming-webhook URL (Slack-compatible).

    5xx and 429 responses and network errors are transient; other
    non-2xx responses are not.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("webhook url must not be empty")
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, ctx: StepContext) -> dict[str, Any]:
        text = ctx.params.get("text") or (
            f"[driftwarden] {ctx.step_id} for incident {ctx.incident.incident_key} "
            f"({ctx.incident.category or 'uncategorised'})"
        )
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json={"text": text})
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ExternalActionError(
                f"webhook returned HTTP {status}", transient=status >= 500 or status == 429
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalActionError(f"webhook request failed: {exc}", transient=True) from exc

        logger.info("webhook_notified", run_id=ctx.run_id, step_id=ctx.step_id)
        return {"step_id": ctx.step_id, "notified": True, "status_code": resp.status_code}
