"""
Transition table: the static graph of allowed issue state changes.

The built-in table is constructed once at import time. A custom table can
be loaded from YAML (``state_machine.transitions_path`` in config)::

    version: "1"
    transitions:
      - from_state: IMPLEMENTING
        to_state: VERIFIED
        transition_type: forward
        required_evidence:
          - type: field_equals
            kind: ci_checks
            path: [conclusion]
            value: success
            reason_type: missing_check
            description: tests not passing
        guardrail_refs: [qa-signoff]

``check_transition`` is pure: given a state pair, the evidence facts and the
lawbook it always returns the same ``TransitionCheck``.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import yaml
from pydantic import ValidationError

from driftwarden.core.evidence.models import BlockingReason, EvidenceFact, ReasonType
from driftwarden.core.evidence.predicates import FieldEquals, FieldPresent, evaluate_all
from driftwarden.core.exceptions import ConfigError
from driftwarden.core.lifecycle.models import (
    TERMINAL_STATES,
    IssueState,
    TransitionCheck,
    TransitionDefinition,
    TransitionTableFile,
    TransitionType,
)
from driftwarden.core.policy.gates import evaluate_guardrails
from driftwarden.core.policy.model import Lawbook
from driftwarden.core.policy.parser import format_validation_error

S = IssueState


class TransitionTable:
    """Immutable lookup of ``(from_state, to_state) → TransitionDefinition``."""

    def __init__(self, definitions: Iterable[TransitionDefinition]) -> None:
        edges: dict[tuple[IssueState, IssueState], TransitionDefinition] = {}
        for d in definitions:
            key = (d.from_state, d.to_state)
            if key in edges:
                raise ConfigError(f"Duplicate transition {d.from_state.value} → {d.to_state.value}")
            if d.from_state in TERMINAL_STATES:
                raise ConfigError(f"Terminal state {d.from_state.value} cannot have outgoing edges")
            if d.from_state == d.to_state:
                raise ConfigError(f"Self-transition on {d.from_state.value} is not allowed")
            edges[key] = d
        self._edges = edges

    def get(self, from_state: IssueState, to_state: IssueState) -> TransitionDefinition | None:
        return self._edges.get((from_state, to_state))

    def valid_transitions(self, state: IssueState) -> list[IssueState]:
        """Targets reachable from *state*, in canonical enum order."""
        order = list(IssueState)
        targets = [to for (frm, to) in self._edges if frm == state]
        return sorted(targets, key=order.index)

    def __iter__(self):
        return iter(self._edges.values())

    def __len__(self) -> int:
        return len(self._edges)


# ---------------------------------------------------------------------------
# Built-in table
# ---------------------------------------------------------------------------


def _builtin_definitions() -> list[TransitionDefinition]:
    forward = [
        TransitionDefinition(
            from_state=S.CREATED,
            to_state=S.SPEC_READY,
            transition_type=TransitionType.FORWARD,
            required_evidence=(
                FieldEquals(
                    kind="spec",
                    path=("complete",),
                    value=True,
                    description="specification is incomplete",
                ),
                FieldPresent(
                    kind="spec",
                    path=("acceptance_criteria",),
                    description="acceptance criteria are not defined",
                ),
            ),
        ),
        TransitionDefinition(
            from_state=S.SPEC_READY,
            to_state=S.IMPLEMENTING,
            transition_type=TransitionType.FORWARD,
        ),
        TransitionDefinition(
            from_state=S.IMPLEMENTING,
            to_state=S.VERIFIED,
            transition_type=TransitionType.FORWARD,
            required_evidence=(
                FieldEquals(
                    kind="ci_checks",
                    path=("conclusion",),
                    value="success",
                    reason_type=ReasonType.MISSING_CHECK.value,
                    description="tests not passing",
                ),
            ),
        ),
        TransitionDefinition(
            from_state=S.VERIFIED,
            to_state=S.MERGE_READY,
            transition_type=TransitionType.FORWARD,
            required_evidence=(
                FieldEquals(
                    kind="review",
                    path=("state",),
                    value="approved",
                    reason_type=ReasonType.MISSING_REVIEW.value,
                    description="awaiting review approvals",
                ),
                FieldEquals(
                    kind="ci_checks",
                    path=("conclusion",),
                    value="success",
                    reason_type=ReasonType.MISSING_CHECK.value,
                    description="CI pipeline has failures",
                ),
            ),
        ),
        TransitionDefinition(
            from_state=S.MERGE_READY,
            to_state=S.DONE,
            transition_type=TransitionType.FORWARD,
            required_evidence=(
                FieldEquals(
                    kind="pull_request",
                    path=("merged",),
                    value=True,
                    description="pull request is not merged",
                ),
            ),
        ),
    ]

    rollback = [
        TransitionDefinition(from_state=frm, to_state=to, transition_type=TransitionType.ROLLBACK)
        for frm, to in (
            (S.VERIFIED, S.IMPLEMENTING),
            (S.MERGE_READY, S.VERIFIED),
            (S.MERGE_READY, S.IMPLEMENTING),
        )
    ]

    active = [S.CREATED, S.SPEC_READY, S.IMPLEMENTING, S.VERIFIED, S.MERGE_READY]
    hold = [
        TransitionDefinition(from_state=s, to_state=S.HOLD, transition_type=TransitionType.HOLD)
        for s in active
    ]
    resume = [
        TransitionDefinition(from_state=S.HOLD, to_state=s, transition_type=TransitionType.RESUME)
        for s in active
    ]
    kill = [
        TransitionDefinition(from_state=s, to_state=S.KILLED, transition_type=TransitionType.KILL)
        for s in [*active, S.HOLD]
    ]
    return forward + rollback + hold + resume + kill


BUILTIN_TABLE = TransitionTable(_builtin_definitions())


def load_transition_table(path: str | Path) -> TransitionTable:
    """Load a custom table from YAML; raises ``ConfigError`` if invalid."""
    p = Path(path).expanduser()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read transition table {p}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML syntax error in {p}: {exc}") from exc
    try:
        parsed = TransitionTableFile.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigError(format_validation_error(exc, f"Invalid transition table {p}:")) from exc
    return TransitionTable(parsed.transitions)


# ---------------------------------------------------------------------------
# Pure checks
# ---------------------------------------------------------------------------


def valid_transitions(state: IssueState, table: TransitionTable = BUILTIN_TABLE) -> list[IssueState]:
    return table.valid_transitions(state)


def check_transition(
    state: IssueState,
    to_state: IssueState,
    facts: Iterable[EvidenceFact],
    lawbook: Lawbook | None = None,
    table: TransitionTable = BUILTIN_TABLE,
) -> TransitionCheck:
    """
    Decide whether ``state → to_state`` is allowed given *facts*.

    An unknown edge yields exactly one ``precondition`` reason. Otherwise
    every unsatisfied predicate and every failing guardrail contributes one
    reason.
    """
    definition = table.get(state, to_state)
    if definition is None:
        if state in TERMINAL_STATES:
            description = f"{state.value} is terminal; only metadata annotations are allowed"
        else:
            description = f"no transition from {state.value} to {to_state.value}"
        return TransitionCheck(
            allowed=False,
            blocking_reasons=[
                BlockingReason(type=ReasonType.PRECONDITION.value, description=description)
            ],
        )

    fact_list = list(facts)
    reasons = [r.to_reason() for r in evaluate_all(definition.required_evidence, fact_list) if not r.satisfied]
    reasons.extend(evaluate_guardrails(lawbook, list(definition.guardrail_refs), fact_list))
    return TransitionCheck(allowed=not reasons, blocking_reasons=reasons, definition=definition)
