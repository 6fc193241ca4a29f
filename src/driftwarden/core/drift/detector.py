"""
Drift detector: compares an issue with its GitHub snapshot.

``detect_drift`` is a pure function: the same issue, snapshot, facts and
detection id always produce the same result. Fields GitHub could not
report (``unknown_fields``) never produce drift.

Each drift type yields suggestions from a fixed rule table. A suggestion
that would move the internal status is only offered as
``external_to_internal`` when the transition table has that edge;
otherwise it is downgraded to ``manual`` with no actions.

A DONE issue whose PR is still open cannot move, so its
``external_to_internal`` repair annotates the issue with the PR reading
(``external_divergence``). Once recorded, the same reading no longer counts
as drift; a different PR number or condition does.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from driftwarden.core.drift import mapping
from driftwarden.core.drift.models import (
    Direction,
    DriftDetectionResult,
    DriftType,
    RepairAction,
    RepairKind,
    RepairSuggestion,
    RiskLevel,
)
from driftwarden.core.evidence.models import EvidenceFact
from driftwarden.core.hashing import content_hash
from driftwarden.core.lifecycle.models import Issue, IssueState
from driftwarden.core.lifecycle.transitions import BUILTIN_TABLE, TransitionTable
from driftwarden.core.mirror.models import ExternalSnapshot


def _pr_fact_agrees(payload: dict[str, Any], snapshot: ExternalSnapshot) -> bool:
    if snapshot.pr_merged:
        return payload.get("merged") is True
    return payload.get("state") == snapshot.pr_state and not payload.get("merged")


def corroborating_facts(
    drift_type: DriftType, snapshot: ExternalSnapshot, facts: Iterable[EvidenceFact]
) -> int:
    """Count stored facts that agree with GitHub's reading for *drift_type*."""
    kinds = mapping.CORROBORATING_KINDS.get(drift_type, ())
    count = 0
    for fact in facts:
        if fact.kind not in kinds:
            continue
        p = fact.payload
        if fact.kind == "github_issue":
            agrees = p.get("state") == snapshot.issue_state
        elif fact.kind == "pull_request":
            agrees = _pr_fact_agrees(p, snapshot)
        elif drift_type == DriftType.CHECK_MISMATCH:
            agrees = p.get("conclusion") == snapshot.check_state
        else:
            agrees = p.get("state") == snapshot.review_state
        if agrees:
            count += 1
    return count


class _SuggestionBuilder:
    def __init__(
        self,
        detection_id: str,
        issue: Issue,
        snapshot: ExternalSnapshot,
        facts: list[EvidenceFact],
        table: TransitionTable,
    ) -> None:
        self.detection_id = detection_id
        self.issue = issue
        self.snapshot = snapshot
        self.facts = facts
        self.table = table
        self.suggestions: list[RepairSuggestion] = []

    def add(
        self,
        drift_type: DriftType,
        direction: Direction,
        actions: list[RepairAction],
        risk: RiskLevel,
        description: str,
        evidence: list[str],
    ) -> None:
        corroborating = corroborating_facts(drift_type, self.snapshot, self.facts)
        lines = [*evidence, f"internal status: {self.issue.status.value}"]
        if corroborating:
            lines.append(f"corroborating facts: {corroborating}")
        suggestion_id = "sug-" + content_hash(
            {
                "detection_id": self.detection_id,
                "drift_type": drift_type,
                "direction": direction,
                "actions": [a.model_dump(mode="json") for a in actions],
            }
        )[:16]
        self.suggestions.append(
            RepairSuggestion(
                id=suggestion_id,
                drift_type=drift_type,
                direction=direction,
                actions=actions,
                risk_level=risk,
                confidence=mapping.confidence_for(direction, corroborating),
                evidence=lines,
                description=description,
            )
        )

    def add_status_move(
        self, drift_type: DriftType, target: IssueState, evidence: list[str], why: str
    ) -> None:
        """external_to_internal move when the edge exists, manual otherwise."""
        if target in self.table.valid_transitions(self.issue.status):
            self.add(
                drift_type,
                Direction.EXTERNAL_TO_INTERNAL,
                [RepairAction(kind=RepairKind.SET_STATUS, params={"to_state": target.value})],
                mapping.risk_for(RepairKind.SET_STATUS, target),
                f"Move internal status {self.issue.status.value} → {target.value}: {why}",
                evidence,
            )
        else:
            self.add(
                drift_type,
                Direction.MANUAL,
                [],
                RiskLevel.HIGH if target in (IssueState.DONE, IssueState.KILLED) else RiskLevel.MEDIUM,
                f"Review manually: {why}; no transition "
                f"{self.issue.status.value} → {target.value} exists",
                evidence,
            )

    def add_comment(self, drift_type: DriftType, body: str, evidence: list[str]) -> None:
        self.add(
            drift_type,
            Direction.INTERNAL_TO_EXTERNAL,
            [RepairAction(kind=RepairKind.COMMENT, params={"body": body})],
            mapping.risk_for(RepairKind.COMMENT),
            f"Comment on GitHub: {body}",
            evidence,
        )


def detect_drift(
    issue: Issue,
    snapshot: ExternalSnapshot,
    facts: Iterable[EvidenceFact],
    *,
    detection_id: str,
    detected_at: datetime,
    table: TransitionTable = BUILTIN_TABLE,
) -> DriftDetectionResult:
    fact_list = list(facts)
    b = _SuggestionBuilder(detection_id, issue, snapshot, fact_list, table)
    status = issue.status
    drift_types: list[DriftType] = []

    # -- STATE: issue open/closed --------------------------------------------
    state_evidence: list[str] = []
    if snapshot.issue_state in ("open", "closed"):
        expected = mapping.expected_issue_state(status)
        if snapshot.issue_state != expected:
            ev = [f"github issue: {snapshot.issue_state}", f"expected: {expected}"]
            state_evidence.extend(ev)
            kind = RepairKind.CLOSE_ISSUE if expected == "closed" else RepairKind.REOPEN_ISSUE
            b.add(
                DriftType.STATE_MISMATCH,
                Direction.INTERNAL_TO_EXTERNAL,
                [RepairAction(kind=kind)],
                mapping.risk_for(kind),
                f"{'Close' if expected == 'closed' else 'Reopen'} the GitHub issue to match {status.value}",
                ev,
            )
            if snapshot.issue_state == "closed" and not status.is_terminal:
                target = IssueState.DONE if snapshot.pr_merged else IssueState.KILLED
                b.add_status_move(DriftType.STATE_MISMATCH, target, ev, "GitHub issue is closed")

    # -- STATE: PR open/closed -----------------------------------------------
    condition = mapping.pr_condition(snapshot.pr_state, snapshot.pr_merged)
    if condition is not None and mapping.pr_state_mismatch(status, condition):
        fingerprint = mapping.divergence_fingerprint(snapshot.pr_number, condition)
        accepted = issue.metadata.get(mapping.DIVERGENCE_METADATA_KEY) or {}
        if accepted.get(DriftType.STATE_MISMATCH.value) != fingerprint:
            ev = [f"github pr #{snapshot.pr_number}: {condition}"]
            state_evidence.extend(ev)
            if condition == "open":
                # DONE is terminal; only its metadata can take in the open PR
                b.add(
                    DriftType.STATE_MISMATCH,
                    Direction.EXTERNAL_TO_INTERNAL,
                    [
                        RepairAction(
                            kind=RepairKind.ANNOTATE,
                            params={
                                "metadata": {
                                    mapping.DIVERGENCE_METADATA_KEY: {
                                        **accepted,
                                        DriftType.STATE_MISMATCH.value: fingerprint,
                                    }
                                }
                            },
                        )
                    ],
                    mapping.risk_for(RepairKind.ANNOTATE),
                    f"Record on the issue that pull request #{snapshot.pr_number} is still open",
                    ev,
                )
                b.add(
                    DriftType.STATE_MISMATCH,
                    Direction.MANUAL,
                    [],
                    RiskLevel.HIGH,
                    f"Review manually: {status.value} but pull request #{snapshot.pr_number} is open; "
                    "merge or close it",
                    ev,
                )
            else:
                b.add_status_move(
                    DriftType.STATE_MISMATCH, IssueState.HOLD, ev, f"pull request is {condition}"
                )
    if state_evidence:
        drift_types.append(DriftType.STATE_MISMATCH)

    # -- STATUS: finished PR vs internal status ------------------------------
    if condition is not None and mapping.status_mismatch(status, condition):
        drift_types.append(DriftType.STATUS_MISMATCH)
        ev = [f"github pr #{snapshot.pr_number}: {condition}"]
        b.add_status_move(
            DriftType.STATUS_MISMATCH,
            mapping.PR_IMPLIED_STATUS[condition],
            ev,
            f"pull request is {condition}",
        )
        b.add_comment(
            DriftType.STATUS_MISMATCH,
            f"Driftwarden: internal status is {status.value} but the pull request is {condition}.",
            ev,
        )

    # -- CHECKS ---------------------------------------------------------------
    if mapping.check_distance(status, snapshot.check_state) > 0:
        drift_types.append(DriftType.CHECK_MISMATCH)
        ev = [f"github checks: {snapshot.check_state}", f"expected: {mapping.CHECK_FLOOR[status]}"]
        target = mapping.ROLLBACK_TARGET[DriftType.CHECK_MISMATCH][status]
        b.add_status_move(DriftType.CHECK_MISMATCH, target, ev, f"checks are {snapshot.check_state}")
        b.add(
            DriftType.CHECK_MISMATCH,
            Direction.MANUAL,
            [],
            RiskLevel.LOW,
            "Re-run or fix the failing checks on GitHub",
            ev,
        )

    # -- REVIEWS --------------------------------------------------------------
    if mapping.review_distance(status, snapshot.review_state) > 0:
        drift_types.append(DriftType.REVIEW_MISMATCH)
        ev = [f"github review: {snapshot.review_state}", f"expected: {mapping.REVIEW_FLOOR[status]}"]
        target = mapping.ROLLBACK_TARGET[DriftType.REVIEW_MISMATCH][status]
        b.add_status_move(DriftType.REVIEW_MISMATCH, target, ev, f"review is {snapshot.review_state}")
        b.add(
            DriftType.REVIEW_MISMATCH,
            Direction.MANUAL,
            [],
            RiskLevel.LOW,
            "Request a fresh review approval",
            ev,
        )

    # -- LABELS ---------------------------------------------------------------
    if snapshot.labels is not None:
        actual = mapping.managed_labels(snapshot.labels)
        expected_set = mapping.expected_labels(status)
        if actual != expected_set:
            drift_types.append(DriftType.LABEL_MISMATCH)
            missing = sorted(expected_set - actual)
            extra = sorted(actual - expected_set)
            actions: list[RepairAction] = []
            if missing:
                actions.append(RepairAction(kind=RepairKind.ADD_LABELS, params={"labels": missing}))
            if extra:
                actions.append(RepairAction(kind=RepairKind.REMOVE_LABELS, params={"labels": extra}))
            b.add(
                DriftType.LABEL_MISMATCH,
                Direction.INTERNAL_TO_EXTERNAL,
                actions,
                RiskLevel.LOW,
                f"Sync status labels (add {missing or 'none'}, remove {extra or 'none'})",
                [f"github labels: {sorted(actual)}", f"expected: {sorted(expected_set)}"],
            )

    suggestions = sorted(b.suggestions, key=lambda s: (-s.confidence, s.direction.value, s.id))
    evidence: dict[str, Any] = {
        "internal": {
            "status": status.value,
            "labels": sorted(issue.labels),
            "version": issue.version,
        },
        "external": snapshot.to_dict(),
        "corroborating": {
            t.value: corroborating_facts(t, snapshot, fact_list) for t in drift_types
        },
    }

    return DriftDetectionResult(
        id=detection_id,
        entity_id=issue.id,
        drift_detected=bool(drift_types),
        drift_types=drift_types,
        severity=mapping.severity_for(drift_types, snapshot.pr_merged),
        evidence=evidence,
        suggestions=suggestions,
        detected_at=detected_at,
    )
