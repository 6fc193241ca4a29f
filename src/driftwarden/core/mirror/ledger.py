"""
External action ledger: makes ``apply_external_action`` idempotent.

Every successful application is recorded under its idempotency key. A
second application with the same key returns the recorded result with
``applied=False`` instead of repeating the side effect.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from driftwarden.core.mirror.models import ActionResult, ExternalAction
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


class ActionLedger:
    def __init__(self, db: Database) -> None:
        self._db = db

    def lookup(self, idempotency_key: str) -> ActionResult | None:
        row = self._db.get_external_action(idempotency_key)
        if row is None:
            return None
        return ActionResult(
            success=True,
            action_type=row["action_type"],
            idempotency_key=idempotency_key,
            output=json.loads(row["result"] or "{}"),
            applied=False,
        )

    async def apply_once(
        self,
        action: ExternalAction,
        idempotency_key: str,
        perform: Callable[[], Awaitable[dict[str, Any]]],
    ) -> ActionResult:
        """Run *perform* unless *idempotency_key* was already applied."""
        prior = self.lookup(idempotency_key)
        if prior is not None:
            logger.info(
                "external_action_already_applied",
                action_type=action.action_type,
                idempotency_key=idempotency_key,
            )
            return prior

        output = await perform()
        self._db.record_external_action(idempotency_key, action.action_type, action.target, output)
        logger.info(
            "external_action_applied",
            action_type=action.action_type,
            target=action.target,
            idempotency_key=idempotency_key,
        )
        return ActionResult(
            success=True,
            action_type=action.action_type,
            idempotency_key=idempotency_key,
            output=output,
        )
