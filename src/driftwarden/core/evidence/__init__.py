"""Evidence facts, predicates and the fail-closed evidence reader."""

from driftwarden.core.evidence.models import (
    BlockingReason,
    EvidenceFact,
    EvidenceSnapshot,
    ReasonType,
)
from driftwarden.core.evidence.predicates import (
    FieldEquals,
    FieldPresent,
    KindPresent,
    Predicate,
    PredicateResult,
    evaluate_all,
    evaluate_predicate,
)

__all__ = [
    "BlockingReason",
    "EvidenceFact",
    "EvidenceSnapshot",
    "FieldEquals",
    "FieldPresent",
    "KindPresent",
    "Predicate",
    "PredicateResult",
    "ReasonType",
    "evaluate_all",
    "evaluate_predicate",
]
