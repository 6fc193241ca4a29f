"""
Issue lifecycle data model.

States::

    CREATED → SPEC_READY → IMPLEMENTING → VERIFIED → MERGE_READY → DONE
                               ↑             │  ↑         │
                               └─────────────┘  └─────────┘   (rollback)

    HOLD   reachable from every non-terminal state; resumes to any of them
    KILLED: reachable from every non-terminal state (including HOLD)

DONE and KILLED are terminal: they accept metadata annotations only.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from driftwarden.core.evidence.models import BlockingReason
from driftwarden.core.evidence.predicates import Predicate


class IssueState(str, Enum):
    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFIED = "VERIFIED"
    MERGE_READY = "MERGE_READY"
    DONE = "DONE"
    HOLD = "HOLD"
    KILLED = "KILLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[IssueState] = frozenset({IssueState.DONE, IssueState.KILLED})

# Canonical forward order, used by the drift mapper for "ahead / behind" checks.
FORWARD_ORDER: tuple[IssueState, ...] = (
    IssueState.CREATED,
    IssueState.SPEC_READY,
    IssueState.IMPLEMENTING,
    IssueState.VERIFIED,
    IssueState.MERGE_READY,
    IssueState.DONE,
)


class TransitionType(str, Enum):
    FORWARD = "forward"
    ROLLBACK = "rollback"
    HOLD = "hold"
    RESUME = "resume"
    KILL = "kill"


class TransitionDefinition(BaseModel):
    """One allowed edge, with the evidence and guardrails it requires."""

    model_config = {"extra": "forbid", "frozen": True}

    from_state: IssueState
    to_state: IssueState
    transition_type: TransitionType
    required_evidence: tuple[Predicate, ...] = ()
    guardrail_refs: tuple[str, ...] = ()
    description: str = ""

    @property
    def evidence_kinds(self) -> list[str]:
        return sorted({p.kind for p in self.required_evidence})


@dataclass
class Issue:
    id: str
    short_id: str
    title: str
    status: IssueState
    labels: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    github_ref: str = ""
    version: int = 1
    is_active: bool = False
    created_at: str = ""
    updated_at: str = ""
    status_changed_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Issue:
        return cls(
            id=row["id"],
            short_id=row["short_id"],
            title=row["title"],
            status=IssueState(row["status"]),
            labels=json.loads(row["labels"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
            github_ref=row["github_ref"] or "",
            version=row["version"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            status_changed_at=row["status_changed_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "title": self.title,
            "status": self.status.value,
            "labels": list(self.labels),
            "metadata": dict(self.metadata),
            "github_ref": self.github_ref,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status_changed_at": self.status_changed_at,
        }


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    blocking_reasons: list[BlockingReason] = field(default_factory=list)
    definition: TransitionDefinition | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "blocking_reasons": [r.to_dict() for r in self.blocking_reasons],
        }


@dataclass(frozen=True)
class TransitionOutcome:
    issue: Issue
    from_state: IssueState
    to_state: IssueState
    idempotency_key: str
    transition_type: TransitionType | None = None
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": True,
            "issue_id": self.issue.id,
            "from_state": self.from_state.value,
            "new_state": self.to_state.value,
            "version": self.issue.version,
            "idempotency_key": self.idempotency_key,
            "replayed": self.replayed,
        }


class TransitionTableFile(BaseModel):
    """On-disk shape of a custom transition table."""

    model_config = {"extra": "forbid"}

    version: str = "1"
    transitions: list[TransitionDefinition] = Field(default_factory=list)
