"""
Lawbook gates: deterministic allow/deny checks evaluated before a
remediation run is planned and before a guarded transition is applied.

Every gate is deny-by-default: no lawbook means DENY with a
``no_lawbook`` reason. A gate never raises on a denial; it returns a
``GateVerdict`` whose reasons say exactly what failed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from driftwarden.core.constants import IDEMPOTENCY_KEY_MAX_LENGTH
from driftwarden.core.evidence.models import BlockingReason, EvidenceFact, ReasonType
from driftwarden.core.evidence.predicates import blocking_reasons, evaluate_all
from driftwarden.core.policy.model import Lawbook

logger = structlog.get_logger()

_KEY_RE = re.compile(r"^[A-Za-z0-9_:\-]+$")


class Verdict(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass(frozen=True)
class GateVerdict:
    verdict: Verdict
    reasons: list[BlockingReason] = field(default_factory=list)
    lawbook_version: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict == Verdict.ALLOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "reasons": [r.to_dict() for r in self.reasons],
            "lawbook_version": self.lawbook_version,
        }


def _policy_reason(code: str, description: str) -> BlockingReason:
    return BlockingReason(type=ReasonType.POLICY.value, description=description, ref=code)


NO_LAWBOOK = _policy_reason("no_lawbook", "no active lawbook; remediation denied by default")


# ---------------------------------------------------------------------------
# Remediation gates
# ---------------------------------------------------------------------------


def evaluate_remediation_gates(
    lawbook: Lawbook | None,
    *,
    playbook_id: str,
    action_types: list[str],
    executed_runs: int,
    last_run_at: datetime | None,
    now: datetime,
) -> GateVerdict:
    """
    Check the lawbook's remediation section for one planned run.

    Collects every failing gate rather than stopping at the first, so the
    caller can report all of them at once.
    """
    if lawbook is None:
        return GateVerdict(verdict=Verdict.DENY, reasons=[NO_LAWBOOK])

    policy = lawbook.remediation
    reasons: list[BlockingReason] = []

    if not policy.enabled:
        reasons.append(_policy_reason("remediation_disabled", "remediation is disabled by the lawbook"))

    if playbook_id not in policy.allowed_playbooks:
        reasons.append(
            _policy_reason("playbook_not_allowed", f"playbook '{playbook_id}' is not allowed")
        )

    for action in sorted(set(action_types)):
        if action not in policy.allowed_actions:
            reasons.append(_policy_reason("action_not_allowed", f"action '{action}' is not allowed"))

    if policy.max_runs_per_incident and executed_runs >= policy.max_runs_per_incident:
        reasons.append(
            _policy_reason(
                "max_runs_exceeded",
                f"incident already has {executed_runs} run(s); "
                f"limit is {policy.max_runs_per_incident}",
            )
        )

    if policy.cooldown_minutes and last_run_at is not None:
        ready_at = last_run_at + timedelta(minutes=policy.cooldown_minutes)
        if now < ready_at:
            reasons.append(
                _policy_reason(
                    "cooldown_active",
                    f"cooldown of {policy.cooldown_minutes} minute(s) active until "
                    f"{ready_at.isoformat()}",
                )
            )

    verdict = Verdict.DENY if reasons else Verdict.ALLOW
    if reasons:
        logger.info(
            "remediation_gate_denied",
            playbook_id=playbook_id,
            reasons=[r.ref for r in reasons],
        )
    return GateVerdict(verdict=verdict, reasons=reasons, lawbook_version=lawbook.stamp())


def required_evidence_kinds(lawbook: Lawbook | None, category: str) -> list[str]:
    if lawbook is None or not category:
        return []
    return list(lawbook.evidence.required_kinds_by_category.get(category, []))


def missing_evidence_kinds(required: list[str], facts: list[EvidenceFact]) -> list[BlockingReason]:
    present = {f.kind for f in facts}
    return [
        BlockingReason(
            type=ReasonType.MISSING_EVIDENCE.value,
            description=f"required evidence kind '{kind}' missing",
            ref=kind,
        )
        for kind in required
        if kind not in present
    ]


def check_key_format(key: str) -> BlockingReason | None:
    """Idempotency keys: at most 256 characters of ``[A-Za-z0-9_:-]``."""
    if not key or len(key) > IDEMPOTENCY_KEY_MAX_LENGTH or not _KEY_RE.match(key):
        return _policy_reason(
            "invalid_idempotency_key",
            f"idempotency key must be 1-{IDEMPOTENCY_KEY_MAX_LENGTH} characters of [A-Za-z0-9_:-]",
        )
    return None


# ---------------------------------------------------------------------------
# Transition guardrails
# ---------------------------------------------------------------------------


def evaluate_guardrails(
    lawbook: Lawbook | None,
    guardrail_refs: list[str],
    facts: list[EvidenceFact],
) -> list[BlockingReason]:
    """
    Resolve each guardrail reference in the lawbook and evaluate it.

    A reference with no lawbook, or one the lawbook does not define, is a
    failing guardrail. Advisory guardrails are logged and never block.
    """
    reasons: list[BlockingReason] = []
    for ref in guardrail_refs:
        guardrail = lawbook.guardrail(ref) if lawbook is not None else None
        if guardrail is None:
            reasons.append(
                BlockingReason(
                    type=ReasonType.GUARDRAIL.value,
                    description=f"guardrail '{ref}' is not defined in the active lawbook",
                    ref=ref,
                )
            )
            continue

        failures: list[str] = []
        if guardrail.deny:
            failures.append(guardrail.description or "denied by lawbook")
        failures.extend(r.description for r in blocking_reasons(evaluate_all(guardrail.requires, facts)))
        if not failures:
            continue

        if not guardrail.blocking:
            logger.warning("guardrail_advisory", guardrail=ref, failures=failures)
            continue

        reasons.append(
            BlockingReason(
                type=ReasonType.GUARDRAIL.value,
                description=f"guardrail '{ref}' failed: {'; '.join(failures)}",
                ref=ref,
            )
        )
    return reasons
