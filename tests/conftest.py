"""Shared fixtures: a migrated database, lifecycle engine, lawbooks and a fake mirror."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from driftwarden.core.lifecycle.engine import LifecycleEngine
from driftwarden.core.mirror.ledger import ActionLedger
from driftwarden.core.mirror.models import ActionResult, ExternalAction, ExternalSnapshot
from driftwarden.core.policy.model import Lawbook, RemediationPolicy
from driftwarden.core.policy.parser import LawbookProvider
from driftwarden.core.store.database import Database

ALL_PLAYBOOKS = [
    "restart-service",
    "redeploy-lkg",
    "rerun-post-deploy-verification",
    "service-health-reset",
]
ALL_ACTIONS = [
    "RESTART_SERVICE",
    "ROLLBACK_DEPLOY",
    "SCALE_UP",
    "SCALE_DOWN",
    "DRAIN_TASKS",
    "NOTIFY_SLACK",
    "CREATE_ISSUE",
    "RUN_VERIFICATION",
    "SNAPSHOT_SERVICE_STATE",
    "FORCE_NEW_DEPLOYMENT",
    "POLL_SERVICE_HEALTH",
    "UPDATE_INCIDENT_STATUS",
]


def permissive_lawbook(**remediation: Any) -> Lawbook:
    """A lawbook that enables every built-in playbook and action."""
    policy = {
        "enabled": True,
        "allowed_playbooks": ALL_PLAYBOOKS,
        "allowed_actions": ALL_ACTIONS,
        "max_runs_per_incident": 10,
        **remediation,
    }
    return Lawbook(version="1", name="test", remediation=RemediationPolicy(**policy))


class FakeMirror:
    """In-memory ``MirrorClient``: serves a snapshot, records applied actions and reflects them in it."""

    def __init__(self, db: Database, snapshot: ExternalSnapshot | None = None) -> None:
        self.snapshot = snapshot
        self.applied: list[ExternalAction] = []
        self.fail_on: set[str] = set()
        self._ledger = ActionLedger(db)

    async def fetch_external_state(self, entity_ref: str) -> ExternalSnapshot:
        if self.snapshot is None:
            snap = ExternalSnapshot(entity_ref=entity_ref)
            snap.mark_unknown("issue_state", "labels", "pr_number", "pr_state", "pr_merged")
            return snap
        return self.snapshot

    async def apply_external_action(self, action: ExternalAction, idempotency_key: str) -> ActionResult:
        from driftwarden.core.exceptions import ExternalActionError

        async def perform() -> dict[str, Any]:
            if action.action_type in self.fail_on:
                raise ExternalActionError(f"{action.action_type} failed", transient=False)
            self.applied.append(action)
            self._reflect(action)
            return {"action_type": action.action_type}

        return await self._ledger.apply_once(action, idempotency_key, perform)

    def _reflect(self, action: ExternalAction) -> None:
        snap = self.snapshot
        if snap is None:
            return
        labels = action.params.get("labels") or []
        if action.action_type == "ADD_LABELS" and snap.labels is not None:
            snap.labels = sorted({*snap.labels, *labels})
        elif action.action_type == "REMOVE_LABELS" and snap.labels is not None:
            snap.labels = [label for label in snap.labels if label not in labels]
        elif action.action_type == "CLOSE_ISSUE":
            snap.issue_state = "closed"
        elif action.action_type == "REOPEN_ISSUE":
            snap.issue_state = "open"


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "driftwarden.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def lawbooks() -> LawbookProvider:
    return LawbookProvider(lawbook=permissive_lawbook())


@pytest.fixture
def engine(db: Database, lawbooks: LawbookProvider) -> LifecycleEngine:
    return LifecycleEngine(db, lawbooks=lawbooks)


@pytest.fixture
def mirror(db: Database) -> FakeMirror:
    return FakeMirror(db)


@pytest.fixture
def make_lawbook():
    return permissive_lawbook
