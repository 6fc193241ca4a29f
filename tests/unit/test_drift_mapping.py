"""Unit tests for the status ↔ GitHub mapping tables and scoring rubrics."""

from __future__ import annotations

import pytest

from driftwarden.core.drift import mapping
from driftwarden.core.drift.models import Direction, DriftType, RepairKind, RiskLevel, Severity
from driftwarden.core.lifecycle.models import IssueState

S = IssueState


class TestLabels:
    @pytest.mark.parametrize(
        ("status", "label"),
        [
            (S.IMPLEMENTING, "status:implementing"),
            (S.MERGE_READY, "status:merge-ready"),
            (S.SPEC_READY, "status:spec-ready"),
        ],
    )
    def test_status_label(self, status: IssueState, label: str) -> None:
        assert mapping.status_label(status) == label

    def test_managed_labels_only(self) -> None:
        assert mapping.managed_labels(["bug", "status:done", "p1"]) == {"status:done"}


class TestStateMapping:
    @pytest.mark.parametrize("status", [S.DONE, S.KILLED])
    def test_terminal_means_closed(self, status: IssueState) -> None:
        assert mapping.expected_issue_state(status) == "closed"

    @pytest.mark.parametrize("status", [S.CREATED, S.HOLD, S.MERGE_READY])
    def test_active_means_open(self, status: IssueState) -> None:
        assert mapping.expected_issue_state(status) == "open"

    def test_pr_condition(self) -> None:
        assert mapping.pr_condition("closed", True) == "merged"
        assert mapping.pr_condition("closed", False) == "closed"
        assert mapping.pr_condition("open", None) == "open"
        assert mapping.pr_condition(None, None) is None

    @pytest.mark.parametrize(
        ("status", "condition", "expected"),
        [
            (S.DONE, "open", True),
            (S.DONE, "merged", False),
            (S.IMPLEMENTING, "closed", True),
            (S.MERGE_READY, "merged", True),
            (S.VERIFIED, "open", False),
            (S.HOLD, "closed", False),
            (S.CREATED, "closed", False),
        ],
    )
    def test_pr_state_mismatch(self, status: IssueState, condition: str, expected: bool) -> None:
        assert mapping.pr_state_mismatch(status, condition) is expected

    def test_open_pr_settles_no_status(self) -> None:
        assert not mapping.status_mismatch(S.DONE, "open")
        assert mapping.status_mismatch(S.IMPLEMENTING, "merged")
        assert not mapping.status_mismatch(S.HOLD, "closed")


class TestDistances:
    def test_check_floor(self) -> None:
        assert mapping.check_distance(S.VERIFIED, "failure") == 2
        assert mapping.check_distance(S.MERGE_READY, "pending") == 1
        assert mapping.check_distance(S.VERIFIED, "success") == 0

    def test_no_floor_or_unknown(self) -> None:
        assert mapping.check_distance(S.IMPLEMENTING, "failure") == 0
        assert mapping.check_distance(S.VERIFIED, None) == 0
        assert mapping.check_distance(S.VERIFIED, "neutral") == 0

    def test_review_floor(self) -> None:
        assert mapping.review_distance(S.MERGE_READY, "changes_requested") == 2
        assert mapping.review_distance(S.VERIFIED, "changes_requested") == 0


class TestRubrics:
    def test_risk(self) -> None:
        assert mapping.risk_for(RepairKind.ADD_LABELS) == RiskLevel.LOW
        assert mapping.risk_for(RepairKind.SET_STATUS, S.IMPLEMENTING) == RiskLevel.LOW
        assert mapping.risk_for(RepairKind.SET_STATUS, S.KILLED) == RiskLevel.MEDIUM
        assert mapping.risk_for(RepairKind.SET_STATUS, S.DONE) == RiskLevel.HIGH

    def test_confidence(self) -> None:
        assert mapping.confidence_for(Direction.EXTERNAL_TO_INTERNAL, 0) == 0.8
        assert mapping.confidence_for(Direction.INTERNAL_TO_EXTERNAL, 1) == 0.75
        assert mapping.confidence_for(Direction.MANUAL, 2) == 0.6
        assert mapping.confidence_for(Direction.EXTERNAL_TO_INTERNAL, 10) == 0.99

    def test_severity_none(self) -> None:
        assert mapping.severity_for([], None) == Severity.NONE

    def test_severity_max_of_types(self) -> None:
        assert mapping.severity_for([DriftType.LABEL_MISMATCH], None) == Severity.LOW
        assert (
            mapping.severity_for([DriftType.LABEL_MISMATCH, DriftType.CHECK_MISMATCH], None)
            == Severity.MEDIUM
        )

    def test_merged_status_drift_is_critical(self) -> None:
        assert mapping.severity_for([DriftType.STATUS_MISMATCH], True) == Severity.CRITICAL
        assert mapping.severity_for([DriftType.CHECK_MISMATCH], True) == Severity.MEDIUM

    def test_three_types_at_least_high(self) -> None:
        types = [DriftType.LABEL_MISMATCH, DriftType.CHECK_MISMATCH, DriftType.REVIEW_MISMATCH]
        assert mapping.severity_for(types, False) == Severity.HIGH
