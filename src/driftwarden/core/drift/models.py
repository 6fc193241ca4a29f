"""Drift detection results, repair suggestions and resolutions."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DriftType(str, Enum):
    STATE_MISMATCH = "STATE_MISMATCH"  # issue or PR open/closed vs internal status
    STATUS_MISMATCH = "STATUS_MISMATCH"  # PR state/merged vs internal status
    CHECK_MISMATCH = "CHECK_MISMATCH"
    REVIEW_MISMATCH = "REVIEW_MISMATCH"
    LABEL_MISMATCH = "LABEL_MISMATCH"


class Severity(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.NONE, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Direction(str, Enum):
    INTERNAL_TO_EXTERNAL = "internal_to_external"
    EXTERNAL_TO_INTERNAL = "external_to_internal"
    MANUAL = "manual"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RepairKind(str, Enum):
    # Applied through the lifecycle engine
    SET_STATUS = "SET_STATUS"
    ANNOTATE = "ANNOTATE"
    # Applied through the mirror
    ADD_LABELS = "ADD_LABELS"
    REMOVE_LABELS = "REMOVE_LABELS"
    CLOSE_ISSUE = "CLOSE_ISSUE"
    REOPEN_ISSUE = "REOPEN_ISSUE"
    COMMENT = "COMMENT"

    @property
    def is_internal(self) -> bool:
        return self in (RepairKind.SET_STATUS, RepairKind.ANNOTATE)


class RepairAction(BaseModel):
    model_config = {"extra": "forbid", "frozen": True}

    kind: RepairKind
    params: dict[str, Any] = Field(default_factory=dict)


class RepairSuggestion(BaseModel):
    model_config = {"extra": "forbid"}

    id: str
    drift_type: DriftType
    direction: Direction
    actions: list[RepairAction] = Field(default_factory=list)
    risk_level: RiskLevel
    confidence: float = Field(ge=0.0, le=1.0)
    requires_confirmation: bool = True
    evidence: list[str] = Field(default_factory=list)
    description: str = ""


class DriftResolution(BaseModel):
    model_config = {"extra": "forbid"}

    id: str
    detection_id: str
    suggestion_id: str | None = None
    manual_override: bool = False
    actions: list[RepairAction] = Field(default_factory=list)
    outcome: dict[str, Any] = Field(default_factory=dict)
    actor: str = ""
    resolved_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DriftResolution:
        return cls(
            id=row["id"],
            detection_id=row["detection_id"],
            suggestion_id=row["suggestion_id"],
            manual_override=bool(row["manual_override"]),
            actions=json.loads(row["actions"] or "[]"),
            outcome=json.loads(row["outcome"] or "{}"),
            actor=row["actor"],
            resolved_at=row["resolved_at"],
        )


class DriftDetectionResult(BaseModel):
    model_config = {"extra": "forbid"}

    id: str
    entity_id: str
    drift_detected: bool
    drift_types: list[DriftType] = Field(default_factory=list)
    severity: Severity = Severity.NONE
    evidence: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[RepairSuggestion] = Field(default_factory=list)
    detected_at: datetime
    resolved: bool = False
    resolution: DriftResolution | None = None

    def suggestion(self, suggestion_id: str) -> RepairSuggestion | None:
        for s in self.suggestions:
            if s.id == suggestion_id:
                return s
        return None

    def hashable(self) -> dict[str, Any]:
        """Content used for ``result_hash`` (identity and timing excluded)."""
        data = self.model_dump(mode="json", exclude={"id", "detected_at", "resolved", "resolution"})
        data["evidence"] = {k: v for k, v in data["evidence"].items() if k != "fetched_at"}
        external = data["evidence"].get("external")
        if isinstance(external, dict):
            data["evidence"]["external"] = {k: v for k, v in external.items() if k != "fetched_at"}
        for s in data["suggestions"]:
            s.pop("id", None)
        return data

    @classmethod
    def from_row(
        cls, row: sqlite3.Row, resolution: DriftResolution | None = None
    ) -> DriftDetectionResult:
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            drift_detected=bool(row["drift_detected"]),
            drift_types=json.loads(row["drift_types"] or "[]"),
            severity=row["severity"],
            evidence=json.loads(row["evidence"] or "{}"),
            suggestions=json.loads(row["suggestions"] or "[]"),
            detected_at=row["detected_at"],
            resolved=bool(row["resolved"]),
            resolution=resolution,
        )
