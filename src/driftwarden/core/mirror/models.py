"""
External mirror contracts.

``fetch_external_state`` never raises on partial data: any field it cannot
read is ``None`` and its name is listed in ``unknown_fields``. A snapshot
older than ``MIRROR_STALE_AFTER_SECONDS`` is flagged ``stale``.

``apply_external_action`` is idempotent per ``idempotency_key``: applying the
same key twice returns the first result with ``applied=False``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from driftwarden.core.constants import MIRROR_STALE_AFTER_SECONDS
from driftwarden.core.exceptions import ValidationError

_REF_RE = re.compile(r"^(?P<repo>[A-Za-z0-9_.\-]+/[A-Za-z0-9_.\-]+)#(?P<number>\d+)$")

SNAPSHOT_FIELDS: tuple[str, ...] = (
    "issue_state",
    "labels",
    "pr_number",
    "pr_state",
    "pr_merged",
    "check_state",
    "review_state",
)


@dataclass(frozen=True)
class EntityRef:
    """``owner/repo#number``: a GitHub issue (or the PR it links to)."""

    repo: str
    number: int

    @classmethod
    def parse(cls, ref: str) -> EntityRef:
        m = _REF_RE.match(ref.strip())
        if not m:
            raise ValidationError(f"Invalid GitHub reference {ref!r}; expected owner/repo#number")
        return cls(repo=m.group("repo"), number=int(m.group("number")))

    def __str__(self) -> str:
        return f"{self.repo}#{self.number}"


@dataclass
class ExternalSnapshot:
    """What GitHub currently says about one entity."""

    entity_ref: str
    issue_state: str | None = None  # open | closed
    labels: list[str] | None = None
    pr_number: int | None = None
    pr_state: str | None = None  # open | closed
    pr_merged: bool | None = None
    check_state: str | None = None  # success | failure | pending
    review_state: str | None = None  # approved | changes_requested | pending
    unknown_fields: list[str] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stale: bool = False

    def mark_unknown(self, *names: str) -> None:
        for name in names:
            setattr(self, name, None)
            if name not in self.unknown_fields:
                self.unknown_fields.append(name)

    def refresh_staleness(self, now: datetime | None = None) -> None:
        age = ((now or datetime.now(UTC)) - self.fetched_at).total_seconds()
        self.stale = age > MIRROR_STALE_AFTER_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_ref": self.entity_ref,
            "issue_state": self.issue_state,
            "labels": sorted(self.labels) if self.labels is not None else None,
            "pr_number": self.pr_number,
            "pr_state": self.pr_state,
            "pr_merged": self.pr_merged,
            "check_state": self.check_state,
            "review_state": self.review_state,
            "unknown_fields": sorted(self.unknown_fields),
            "fetched_at": self.fetched_at,
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExternalSnapshot:
        fetched = data.get("fetched_at")
        if isinstance(fetched, str):
            fetched_at = datetime.fromisoformat(fetched.replace("Z", "+00:00"))
            if fetched_at.tzinfo is None:
                fetched_at = fetched_at.replace(tzinfo=UTC)
        elif isinstance(fetched, datetime):
            fetched_at = fetched
        else:
            fetched_at = datetime.now(UTC)
        snapshot = cls(
            entity_ref=str(data.get("entity_ref", "")),
            issue_state=data.get("issue_state"),
            labels=list(data["labels"]) if data.get("labels") is not None else None,
            pr_number=data.get("pr_number"),
            pr_state=data.get("pr_state"),
            pr_merged=data.get("pr_merged"),
            check_state=data.get("check_state"),
            review_state=data.get("review_state"),
            unknown_fields=list(data.get("unknown_fields") or []),
            fetched_at=fetched_at,
        )
        for name in SNAPSHOT_FIELDS:
            if name not in data and name not in snapshot.unknown_fields:
                snapshot.unknown_fields.append(name)
        snapshot.refresh_staleness()
        return snapshot


@dataclass(frozen=True)
class ExternalAction:
    """One side effect on an external system."""

    action_type: str
    target: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"action_type": self.action_type, "target": self.target, "params": self.params}


@dataclass(frozen=True)
class ActionResult:
    success: bool
    action_type: str
    idempotency_key: str
    output: dict[str, Any] = field(default_factory=dict)
    applied: bool = True  # False when a previous application was reused
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action_type": self.action_type,
            "idempotency_key": self.idempotency_key,
            "output": self.output,
            "applied": self.applied,
            "error": self.error,
        }


class MirrorClient(Protocol):
    async def fetch_external_state(self, entity_ref: str) -> ExternalSnapshot: ...

    async def apply_external_action(
        self, action: ExternalAction, idempotency_key: str
    ) -> ActionResult: ...
