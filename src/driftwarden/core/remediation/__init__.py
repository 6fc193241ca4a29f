"""Idempotent remediation playbooks: definitions, planning and execution."""

from driftwarden.core.remediation.models import (
    ActionType,
    ExecutionResult,
    Incident,
    PlanResult,
    Playbook,
    PlaybookStep,
    RemediationRun,
    RemediationStep,
    RunStatus,
    SkipReason,
    StepStatus,
)
from driftwarden.core.remediation.playbooks import BUILTIN_PLAYBOOKS, PlaybookRegistry

__all__ = [
    "BUILTIN_PLAYBOOKS",
    "ActionType",
    "ExecutionResult",
    "Incident",
    "PlanResult",
    "Playbook",
    "PlaybookRegistry",
    "PlaybookStep",
    "RemediationRun",
    "RemediationStep",
    "RunStatus",
    "SkipReason",
    "StepStatus",
]
