"""Issue lifecycle: states, the transition table and the engine that applies it."""

from driftwarden.core.lifecycle.models import (
    Issue,
    IssueState,
    TransitionCheck,
    TransitionDefinition,
    TransitionOutcome,
    TransitionType,
)
from driftwarden.core.lifecycle.transitions import (
    BUILTIN_TABLE,
    TransitionTable,
    check_transition,
    valid_transitions,
)

__all__ = [
    "BUILTIN_TABLE",
    "Issue",
    "IssueState",
    "TransitionCheck",
    "TransitionDefinition",
    "TransitionOutcome",
    "TransitionTable",
    "TransitionType",
    "check_transition",
    "valid_transitions",
]
