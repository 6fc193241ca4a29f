"""Drift detection between internal issue state and GitHub."""

from driftwarden.core.drift.detector import detect_drift
from driftwarden.core.drift.models import (
    Direction,
    DriftDetectionResult,
    DriftResolution,
    DriftType,
    RepairAction,
    RepairKind,
    RepairSuggestion,
    RiskLevel,
    Severity,
)

__all__ = [
    "Direction",
    "DriftDetectionResult",
    "DriftResolution",
    "DriftType",
    "RepairAction",
    "RepairKind",
    "RepairSuggestion",
    "RiskLevel",
    "Severity",
    "detect_drift",
]
