"""
Static mapping tables between internal issue status and GitHub state.

Each table answers "given this internal status, what should GitHub show?"
(or the reverse). The detector only compares; it never guesses beyond
these tables.
"""

from __future__ import annotations

from driftwarden.core.drift.models import Direction, DriftType, RepairKind, RiskLevel, Severity
from driftwarden.core.lifecycle.models import TERMINAL_STATES, IssueState

S = IssueState

# ---------------------------------------------------------------------------
# Status ↔ PR state
# ---------------------------------------------------------------------------

# Internal statuses compatible with a finished PR. An open PR settles no status.
PR_COMPATIBLE_STATUSES: dict[str, frozenset[IssueState]] = {
    "merged": frozenset({S.DONE}),
    "closed": frozenset({S.KILLED, S.HOLD}),
}

# Internal status a finished PR implies, used for external_to_internal repairs.
PR_IMPLIED_STATUS: dict[str, IssueState] = {
    "merged": S.DONE,
    "closed": S.KILLED,
}

# Statuses that claim work is still in flight on an open PR.
IN_FLIGHT_STATUSES = frozenset({S.IMPLEMENTING, S.VERIFIED, S.MERGE_READY})

# Metadata key under which an issue records external divergence it has accepted.
DIVERGENCE_METADATA_KEY = "external_divergence"


def pr_condition(pr_state: str | None, pr_merged: bool | None) -> str | None:
    """merged | closed | open, or None when unknown."""
    if pr_merged:
        return "merged"
    if pr_state in ("open", "closed"):
        return pr_state
    return None


def expected_issue_state(status: IssueState) -> str:
    return "closed" if status in TERMINAL_STATES else "open"


def status_mismatch(status: IssueState, condition: str | None) -> bool:
    """A finished PR whose outcome the internal status does not reflect."""
    compatible = PR_COMPATIBLE_STATUSES.get(condition or "")
    return compatible is not None and status not in compatible


def pr_state_mismatch(status: IssueState, condition: str | None) -> bool:
    """DONE while the PR is still open, or in-flight work on a PR that is no longer open."""
    if status == S.DONE:
        return condition == "open"
    return status in IN_FLIGHT_STATUSES and condition in ("closed", "merged")


def divergence_fingerprint(pr_number: int | None, condition: str) -> str:
    return f"pr#{pr_number}:{condition}"


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

STATUS_LABEL_PREFIX = "status:"


def status_label(status: IssueState) -> str:
    return STATUS_LABEL_PREFIX + status.value.lower().replace("_", "-")


def expected_labels(status: IssueState) -> set[str]:
    """Managed labels GitHub should carry for *status*."""
    return {status_label(status)}


def managed_labels(labels: list[str]) -> set[str]:
    """Only labels in the managed namespace take part in comparison."""
    return {label for label in labels if label.startswith(STATUS_LABEL_PREFIX)}


# ---------------------------------------------------------------------------
# Checks and reviews (enum distance)
# ---------------------------------------------------------------------------

CHECK_RANK: dict[str, int] = {"failure": 0, "pending": 1, "success": 2}
REVIEW_RANK: dict[str, int] = {"changes_requested": 0, "pending": 1, "approved": 2}

# Minimum external state an internal status claims.
CHECK_FLOOR: dict[IssueState, str] = {S.VERIFIED: "success", S.MERGE_READY: "success"}
REVIEW_FLOOR: dict[IssueState, str] = {S.MERGE_READY: "approved"}


def check_distance(status: IssueState, check_state: str | None) -> int:
    """How far the checks fall short of what *status* claims (0 = fine)."""
    floor = CHECK_FLOOR.get(status)
    if floor is None or check_state not in CHECK_RANK:
        return 0
    return max(0, CHECK_RANK[floor] - CHECK_RANK[check_state])


def review_distance(status: IssueState, review_state: str | None) -> int:
    floor = REVIEW_FLOOR.get(status)
    if floor is None or review_state not in REVIEW_RANK:
        return 0
    return max(0, REVIEW_RANK[floor] - REVIEW_RANK[review_state])


# Status to roll back to when checks or reviews no longer support the claim.
ROLLBACK_TARGET: dict[DriftType, dict[IssueState, IssueState]] = {
    DriftType.CHECK_MISMATCH: {S.VERIFIED: S.IMPLEMENTING, S.MERGE_READY: S.IMPLEMENTING},
    DriftType.REVIEW_MISMATCH: {S.MERGE_READY: S.VERIFIED},
}

# ---------------------------------------------------------------------------
# Rubrics
# ---------------------------------------------------------------------------

BASE_SEVERITY: dict[DriftType, Severity] = {
    DriftType.STATE_MISMATCH: Severity.HIGH,
    DriftType.STATUS_MISMATCH: Severity.HIGH,
    DriftType.CHECK_MISMATCH: Severity.MEDIUM,
    DriftType.REVIEW_MISMATCH: Severity.MEDIUM,
    DriftType.LABEL_MISMATCH: Severity.LOW,
}

BASE_CONFIDENCE: dict[Direction, float] = {
    Direction.EXTERNAL_TO_INTERNAL: 0.80,
    Direction.INTERNAL_TO_EXTERNAL: 0.70,
    Direction.MANUAL: 0.50,
}
CONFIDENCE_PER_FACT = 0.05
CONFIDENCE_CAP = 0.99

# Evidence kinds that corroborate each drift type's external reading.
CORROBORATING_KINDS: dict[DriftType, tuple[str, ...]] = {
    DriftType.STATE_MISMATCH: ("github_issue", "pull_request"),
    DriftType.STATUS_MISMATCH: ("pull_request",),
    DriftType.CHECK_MISMATCH: ("ci_checks",),
    DriftType.REVIEW_MISMATCH: ("review",),
}

_REVERSIBLE = frozenset(
    {
        RepairKind.ADD_LABELS,
        RepairKind.REMOVE_LABELS,
        RepairKind.CLOSE_ISSUE,
        RepairKind.REOPEN_ISSUE,
        RepairKind.COMMENT,
        RepairKind.ANNOTATE,
    }
)


def risk_for(kind: RepairKind, target_status: IssueState | None = None) -> RiskLevel:
    """Reversible → low; status move to KILLED → medium; irreversible → high."""
    if kind in _REVERSIBLE:
        return RiskLevel.LOW
    if target_status == S.KILLED:
        return RiskLevel.MEDIUM
    if target_status is not None and target_status in TERMINAL_STATES:
        return RiskLevel.HIGH
    return RiskLevel.LOW


def confidence_for(direction: Direction, corroborating: int) -> float:
    value = BASE_CONFIDENCE[direction] + CONFIDENCE_PER_FACT * max(0, corroborating)
    return round(min(CONFIDENCE_CAP, value), 2)


def severity_for(drift_types: list[DriftType], pr_merged: bool | None) -> Severity:
    if not drift_types:
        return Severity.NONE
    ranks = [BASE_SEVERITY[t] for t in drift_types]
    if pr_merged and (DriftType.STATE_MISMATCH in drift_types or DriftType.STATUS_MISMATCH in drift_types):
        ranks.append(Severity.CRITICAL)
    if len(set(drift_types)) >= 3:
        ranks.append(Severity.HIGH)
    return max(ranks, key=lambda s: s.rank)
