"""
Remediation data model: incidents, playbooks, runs and steps.

Run lifecycle::

    PLANNED → RUNNING → SUCCEEDED | FAILED
    SKIPPED            (gate or evidence denial, written at plan time)

Step lifecycle::

    PLANNED → RUNNING → SUCCEEDED | FAILED | SKIPPED

Neither ever regresses; the store's guarded UPDATEs enforce that.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from driftwarden.core.evidence.models import BlockingReason
from driftwarden.core.evidence.predicates import Predicate

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED)


class StepStatus(str, Enum):
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


class ActionType(str, Enum):
    RESTART_SERVICE = "RESTART_SERVICE"
    ROLLBACK_DEPLOY = "ROLLBACK_DEPLOY"
    SCALE_UP = "SCALE_UP"
    SCALE_DOWN = "SCALE_DOWN"
    DRAIN_TASKS = "DRAIN_TASKS"
    NOTIFY_SLACK = "NOTIFY_SLACK"
    CREATE_ISSUE = "CREATE_ISSUE"
    RUN_VERIFICATION = "RUN_VERIFICATION"
    SNAPSHOT_SERVICE_STATE = "SNAPSHOT_SERVICE_STATE"
    FORCE_NEW_DEPLOYMENT = "FORCE_NEW_DEPLOYMENT"
    POLL_SERVICE_HEALTH = "POLL_SERVICE_HEALTH"
    UPDATE_INCIDENT_STATUS = "UPDATE_INCIDENT_STATUS"


class SkipReason(str, Enum):
    LAWBOOK_DENIED = "LAWBOOK_DENIED"
    EVIDENCE_MISSING = "EVIDENCE_MISSING"
    IDEMPOTENT_REPLAY = "idempotent_replay"
    ALREADY_APPLIED = "already_applied"


# ROLLBACK_DEPLOY is reserved to this playbook regardless of the lawbook.
ROLLBACK_PLAYBOOK_ID = "redeploy-lkg"


# ---------------------------------------------------------------------------
# Incident
# ---------------------------------------------------------------------------


@dataclass
class Incident:
    id: str
    incident_key: str
    title: str = ""
    category: str = ""
    severity: str = "P2"
    issue_id: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Incident:
        return cls(
            id=row["id"],
            incident_key=row["incident_key"],
            title=row["title"],
            category=row["category"],
            severity=row["severity"],
            issue_id=row["issue_id"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "incident_key": self.incident_key,
            "title": self.title,
            "category": self.category,
            "severity": self.severity,
            "issue_id": self.issue_id,
        }


# ---------------------------------------------------------------------------
# Playbook definitions
# ---------------------------------------------------------------------------


class PlaybookStep(BaseModel):
    model_config = {"extra": "forbid", "frozen": True}

    step_id: str = Field(min_length=1)
    action_type: ActionType
    description: str = ""
    best_effort: bool = False
    """A failed best-effort step is recorded but does not fail the run."""

    params: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1)
    """Overrides the runner's retry budget for transient external errors."""


class Playbook(BaseModel):
    model_config = {"extra": "forbid"}

    id: str = Field(min_length=1)
    version: str
    title: str = ""
    categories: list[str] = Field(default_factory=list)
    """Incident categories this playbook applies to. Empty means any."""

    required_evidence: list[Predicate] = Field(default_factory=list)
    """Every predicate must hold against the incident's evidence."""

    steps: list[PlaybookStep] = Field(min_length=1)

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> str:
        return str(v)

    @model_validator(mode="after")
    def unique_step_ids(self) -> Playbook:
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"Duplicate step id {step.step_id!r} in playbook {self.id!r}")
            seen.add(step.step_id)
        return self

    @property
    def action_types(self) -> list[str]:
        return [s.action_type.value for s in self.steps]

    def applies_to(self, category: str) -> bool:
        return not self.categories or category in self.categories


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


def _loads(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


@dataclass
class RemediationStep:
    id: str
    run_id: str
    step_id: str
    position: int
    action_type: str
    status: StepStatus
    idempotency_key: str
    best_effort: bool = False
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RemediationStep:
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            position=row["position"],
            action_type=row["action_type"],
            status=StepStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            best_effort=bool(row["best_effort"]),
            input=_loads(row["input"], {}),
            output=_loads(row["output"], None),
            error=_loads(row["error"], None),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "best_effort": self.best_effort,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RemediationRun:
    id: str
    run_key: str
    attempt: int
    incident_id: str
    playbook_id: str
    playbook_version: str
    status: RunStatus
    lawbook_version: str
    inputs_hash: str
    planned: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    skip_reason: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RemediationRun:
        return cls(
            id=row["id"],
            run_key=row["run_key"],
            attempt=row["attempt"],
            incident_id=row["incident_id"],
            playbook_id=row["playbook_id"],
            playbook_version=row["playbook_version"],
            status=RunStatus(row["status"]),
            lawbook_version=row["lawbook_version"],
            inputs_hash=row["inputs_hash"],
            planned=_loads(row["planned"], {}),
            result=_loads(row["result"], {}),
            skip_reason=row["skip_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.id,
            "run_key": self.run_key,
            "attempt": self.attempt,
            "incident_id": self.incident_id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "status": self.status.value,
            "lawbook_version": self.lawbook_version,
            "inputs_hash": self.inputs_hash,
            "skip_reason": self.skip_reason,
            "result": self.result,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PlanResult:
    """
    Outcome of ``plan``.

    ``replayed`` is set when an existing live run already held the run key;
    ``run`` is then that existing run and the call reports
    ``SKIPPED``/``idempotent_replay`` without writing anything.
    """

    run: RemediationRun
    steps: list[RemediationStep] = field(default_factory=list)
    replayed: bool = False
    reasons: list[BlockingReason] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        return RunStatus.SKIPPED if self.replayed else self.run.status

    @property
    def skip_reason(self) -> str | None:
        return SkipReason.IDEMPOTENT_REPLAY.value if self.replayed else self.run.skip_reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id,
            "run_key": self.run.run_key,
            "status": self.status.value,
            "skip_reason": self.skip_reason,
            "reasons": [r.to_dict() for r in self.reasons],
            "lawbook_version": self.run.lawbook_version,
        }


@dataclass
class ExecutionResult:
    run: RemediationRun
    steps: list[RemediationStep] = field(default_factory=list)
    replayed: bool = False
    skip_reason: str | None = None

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def failed_step(self) -> str | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED and not step.best_effort:
                return step.step_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id,
            "run_key": self.run.run_key,
            "status": self.run.status.value,
            "skip_reason": self.skip_reason or self.run.skip_reason,
            "replayed": self.replayed,
            "failed_step": self.failed_step,
            "steps": [s.to_dict() for s in self.steps],
        }
