"""Evidence facts, snapshots and the structured reasons derived from them."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class ReasonType(StrEnum):
    """Why something was blocked."""

    PRECONDITION = "precondition"
    MISSING_EVIDENCE = "missing_evidence"
    MISSING_CHECK = "missing_check"
    MISSING_REVIEW = "missing_review"
    GUARDRAIL = "guardrail"
    EVIDENCE_UNAVAILABLE = "evidence_unavailable"
    POLICY = "policy"


@dataclass(frozen=True)
class BlockingReason:
    """One structured reason an operation cannot proceed."""

    type: str
    description: str
    predicate: dict[str, Any] | None = None
    ref: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": str(self.type), "description": self.description}
        if self.predicate is not None:
            data["predicate"] = self.predicate
        if self.ref:
            data["ref"] = self.ref
        return data


@dataclass(frozen=True)
class EvidenceFact:
    """An observation about an entity, keyed by (entity_id, kind, content_hash)."""

    entity_id: str
    kind: str
    payload: dict[str, Any]
    content_hash: str
    observed_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EvidenceFact:
        return cls(
            entity_id=row["entity_id"],
            kind=row["kind"],
            payload=json.loads(row["payload"] or "{}"),
            content_hash=row["content_hash"],
            observed_at=row["observed_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "payload": self.payload,
            "content_hash": self.content_hash,
            "observed_at": self.observed_at,
        }


@dataclass(frozen=True)
class EvidenceSnapshot:
    """All facts read for one entity at one point in time."""

    entity_id: str
    facts: tuple[EvidenceFact, ...] = ()
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def of_kind(self, kind: str) -> list[EvidenceFact]:
        return [f for f in self.facts if f.kind == kind]

    def kinds(self) -> set[str]:
        return {f.kind for f in self.facts}

    def __len__(self) -> int:
        return len(self.facts)
