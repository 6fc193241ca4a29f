"""
Evidence predicates: the small interpreted language used by transition
definitions and playbook preconditions.

A predicate names an evidence ``kind`` and, optionally, a ``path`` into the
fact payload. ``path`` is always a tuple of explicit segments (string keys or
integer list indexes), so keys containing dots need no escaping.

Only the newest fact of a kind counts (greatest ``observed_at``; on a tie the
later one in the list). A predicate is satisfied when that fact satisfies it:

  kind_present   any fact of the kind exists
  field_present  the path resolves to a non-null value
  field_equals   the path resolves to a value canonically equal to ``value``
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from driftwarden.core.evidence.models import BlockingReason, EvidenceFact, ReasonType
from driftwarden.core.hashing import MISSING, canonicalize

PathSegment = str | int


class _PredicateBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(min_length=1)
    reason_type: str = ReasonType.MISSING_EVIDENCE.value
    description: str = ""

    def describe(self) -> str:
        return self.description or f"evidence '{self.kind}' not satisfied"


class KindPresent(_PredicateBase):
    type: Literal["kind_present"] = "kind_present"


class FieldPresent(_PredicateBase):
    type: Literal["field_present"] = "field_present"
    path: tuple[PathSegment, ...]

    @field_validator("path")
    @classmethod
    def _non_empty(cls, v: tuple[PathSegment, ...]) -> tuple[PathSegment, ...]:
        if not v:
            raise ValueError("path must have at least one segment")
        return v


class FieldEquals(_PredicateBase):
    type: Literal["field_equals"] = "field_equals"
    path: tuple[PathSegment, ...]
    value: Any = None

    @field_validator("path")
    @classmethod
    def _non_empty(cls, v: tuple[PathSegment, ...]) -> tuple[PathSegment, ...]:
        if not v:
            raise ValueError("path must have at least one segment")
        return v


Predicate = Annotated[KindPresent | FieldPresent | FieldEquals, Field(discriminator="type")]


@dataclass(frozen=True)
class PredicateResult:
    predicate: KindPresent | FieldPresent | FieldEquals
    satisfied: bool
    matched_fact: str | None = None  # content hash of the satisfying fact

    def to_reason(self) -> BlockingReason:
        return BlockingReason(
            type=self.predicate.reason_type,
            description=self.predicate.describe(),
            predicate=self.predicate.model_dump(mode="json"),
        )


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


def resolve_path(payload: Any, path: Sequence[PathSegment]) -> Any:
    """Walk *path* through nested mappings and lists; ``MISSING`` if absent."""
    current = payload
    for segment in path:
        if isinstance(current, Mapping):
            if not isinstance(segment, str) or segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list | tuple) and not isinstance(current, str):
            if not isinstance(segment, int) or isinstance(segment, bool):
                return MISSING
            if not -len(current) <= segment < len(current):
                return MISSING
            current = current[segment]
        else:
            return MISSING
    return current


def _fact_satisfies(pred: KindPresent | FieldPresent | FieldEquals, fact: EvidenceFact) -> bool:
    if isinstance(pred, KindPresent):
        return True
    found = resolve_path(fact.payload, pred.path)
    if found is MISSING or found is None:
        return False
    if isinstance(pred, FieldPresent):
        return True
    return canonicalize(found) == canonicalize(pred.value)


def latest_fact(facts: Iterable[EvidenceFact], kind: str) -> EvidenceFact | None:
    """The newest fact of *kind*, or None."""
    latest: EvidenceFact | None = None
    for fact in facts:
        if fact.kind != kind:
            continue
        if latest is None or fact.observed_at >= latest.observed_at:
            latest = fact
    return latest


def evaluate_predicate(
    pred: KindPresent | FieldPresent | FieldEquals, facts: Iterable[EvidenceFact]
) -> PredicateResult:
    """Evaluate one predicate against the newest fact of its kind."""
    fact = latest_fact(facts, pred.kind)
    if fact is not None and _fact_satisfies(pred, fact):
        return PredicateResult(predicate=pred, satisfied=True, matched_fact=fact.content_hash)
    return PredicateResult(predicate=pred, satisfied=False)


def evaluate_all(
    preds: Iterable[KindPresent | FieldPresent | FieldEquals], facts: Iterable[EvidenceFact]
) -> list[PredicateResult]:
    """Evaluate every predicate, preserving order."""
    fact_list = list(facts)
    return [evaluate_predicate(p, fact_list) for p in preds]


def blocking_reasons(results: Iterable[PredicateResult]) -> list[BlockingReason]:
    return [r.to_reason() for r in results if not r.satisfied]
