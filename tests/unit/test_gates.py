"""Unit tests for remediation gates, key format checks and guardrails."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from driftwarden.core.evidence.models import EvidenceFact
from driftwarden.core.evidence.predicates import FieldEquals
from driftwarden.core.policy.gates import (
    Verdict,
    check_key_format,
    evaluate_guardrails,
    evaluate_remediation_gates,
    missing_evidence_kinds,
    required_evidence_kinds,
)
from driftwarden.core.policy.model import (
    EvidencePolicy,
    Guardrail,
    GuardrailEnforcement,
    Lawbook,
    RemediationPolicy,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _lawbook(**remediation) -> Lawbook:
    policy = {
        "enabled": True,
        "allowed_playbooks": ["restart-service"],
        "allowed_actions": ["RESTART_SERVICE", "NOTIFY_SLACK"],
        **remediation,
    }
    return Lawbook(version="1", remediation=RemediationPolicy(**policy))


def _gate(lawbook: Lawbook | None, **overrides):
    args = {
        "playbook_id": "restart-service",
        "action_types": ["RESTART_SERVICE"],
        "executed_runs": 0,
        "last_run_at": None,
        "now": NOW,
        **overrides,
    }
    return evaluate_remediation_gates(lawbook, **args)


def _refs(verdict) -> list[str]:
    return [r.ref for r in verdict.reasons]


class TestRemediationGates:
    def test_allow(self) -> None:
        verdict = _gate(_lawbook())
        assert verdict.allowed
        assert verdict.reasons == []
        assert verdict.lawbook_version.startswith("1@")

    def test_no_lawbook(self) -> None:
        verdict = _gate(None)
        assert verdict.verdict == Verdict.DENY
        assert _refs(verdict) == ["no_lawbook"]

    def test_disabled(self) -> None:
        assert "remediation_disabled" in _refs(_gate(_lawbook(enabled=False)))

    def test_playbook_not_allowed(self) -> None:
        assert _refs(_gate(_lawbook(), playbook_id="redeploy-lkg")) == ["playbook_not_allowed"]

    def test_each_disallowed_action_reported(self) -> None:
        verdict = _gate(_lawbook(), action_types=["ROLLBACK_DEPLOY", "SCALE_UP", "RESTART_SERVICE"])
        assert _refs(verdict) == ["action_not_allowed", "action_not_allowed"]

    def test_max_runs(self) -> None:
        assert _refs(_gate(_lawbook(max_runs_per_incident=2), executed_runs=2)) == ["max_runs_exceeded"]
        assert _gate(_lawbook(max_runs_per_incident=2), executed_runs=1).allowed

    def test_zero_max_runs_is_unlimited(self) -> None:
        assert _gate(_lawbook(max_runs_per_incident=0), executed_runs=100).allowed

    def test_cooldown(self) -> None:
        lb = _lawbook(cooldown_minutes=10)
        recent = _gate(lb, last_run_at=NOW - timedelta(minutes=5))
        assert _refs(recent) == ["cooldown_active"]
        assert _gate(lb, last_run_at=NOW - timedelta(minutes=10)).allowed

    def test_all_failures_collected(self) -> None:
        verdict = _gate(
            _lawbook(enabled=False, max_runs_per_incident=1),
            playbook_id="other",
            executed_runs=1,
        )
        assert set(_refs(verdict)) == {"remediation_disabled", "playbook_not_allowed", "max_runs_exceeded"}

    def test_to_dict(self) -> None:
        data = _gate(None).to_dict()
        assert data["verdict"] == "DENY"
        assert data["reasons"][0]["type"] == "policy"


class TestRequiredEvidence:
    def test_kinds_by_category(self) -> None:
        lb = Lawbook(
            version="1",
            evidence=EvidencePolicy(required_kinds_by_category={"SERVICE_UNHEALTHY": ["ecs", "alarm"]}),
        )
        assert required_evidence_kinds(lb, "SERVICE_UNHEALTHY") == ["ecs", "alarm"]
        assert required_evidence_kinds(lb, "OTHER") == []
        assert required_evidence_kinds(None, "SERVICE_UNHEALTHY") == []

    def test_missing_kinds(self) -> None:
        facts = [EvidenceFact(entity_id="i", kind="ecs", payload={}, content_hash="h")]
        reasons = missing_evidence_kinds(["ecs", "alarm"], facts)
        assert [r.ref for r in reasons] == ["alarm"]
        assert reasons[0].type == "missing_evidence"


class TestKeyFormat:
    def test_valid(self) -> None:
        assert check_key_format("inc-1:restart-service:abc_123") is None

    def test_invalid_characters(self) -> None:
        reason = check_key_format("has space")
        assert reason is not None
        assert reason.ref == "invalid_idempotency_key"

    def test_empty(self) -> None:
        assert check_key_format("") is not None

    def test_length_limit(self) -> None:
        assert check_key_format("a" * 256) is None
        assert check_key_format("a" * 257) is not None


class TestGuardrails:
    def _lawbook(self) -> Lawbook:
        return Lawbook(
            version="1",
            guardrails=[
                Guardrail(
                    id="security-review",
                    requires=[
                        FieldEquals(
                            kind="security_review",
                            path=("state",),
                            value="approved",
                            description="security review not approved",
                        )
                    ],
                ),
                Guardrail(id="freeze", deny=True, description="change freeze in effect"),
                Guardrail(id="advisory-freeze", deny=True, enforcement=GuardrailEnforcement.ADVISORY),
            ],
        )

    def test_unmet_requirement_blocks(self) -> None:
        reasons = evaluate_guardrails(self._lawbook(), ["security-review"], [])
        assert len(reasons) == 1
        assert reasons[0].type == "guardrail"
        assert "security review not approved" in reasons[0].description

    def test_met_requirement_passes(self) -> None:
        facts = [
            EvidenceFact(entity_id="i", kind="security_review", payload={"state": "approved"}, content_hash="h")
        ]
        assert evaluate_guardrails(self._lawbook(), ["security-review"], facts) == []

    def test_deny_blocks(self) -> None:
        reasons = evaluate_guardrails(self._lawbook(), ["freeze"], [])
        assert "change freeze in effect" in reasons[0].description

    def test_advisory_never_blocks(self) -> None:
        assert evaluate_guardrails(self._lawbook(), ["advisory-freeze"], []) == []

    def test_undefined_guardrail_fails(self) -> None:
        reasons = evaluate_guardrails(self._lawbook(), ["unknown"], [])
        assert reasons[0].ref == "unknown"
        assert "not defined" in reasons[0].description

    def test_no_lawbook_fails_every_ref(self) -> None:
        assert len(evaluate_guardrails(None, ["a", "b"], [])) == 2
