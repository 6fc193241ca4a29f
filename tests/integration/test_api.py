"""Integration tests for the FastAPI surface, using TestClient over real services."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from driftwarden.api.app import create_app
from driftwarden.core.config import DatabaseConfig, DriftwardenConfig, LawbookConfig, RemediationConfig
from driftwarden.core.services import Services

LAWBOOK = """
version: "7"
remediation:
  enabled: true
  allowed_playbooks: [restart-service]
  allowed_actions: [DRAIN_TASKS, RESTART_SERVICE, RUN_VERIFICATION, NOTIFY_SLACK]
  max_runs_per_incident: 5
"""


def _config(tmp_path: Path, lawbook: str | None = LAWBOOK) -> DriftwardenConfig:
    lawbook_path = tmp_path / "lawbook.yaml"
    if lawbook is not None:
        lawbook_path.write_text(lawbook)
    return DriftwardenConfig(
        database=DatabaseConfig(path=str(tmp_path / "api.db")),
        lawbook=LawbookConfig(path=str(lawbook_path)),
        remediation=RemediationConfig(step_backoff_seconds=0, replay_wait_seconds=0.1),
    )


@pytest.fixture
def client(tmp_path: Path):
    services = Services(_config(tmp_path))
    with TestClient(create_app(services=services)) as c:
        yield c
    services.close()


def _create_issue(client: TestClient, **extra) -> dict:
    resp = client.post("/issues", json={"title": "Fix login", **extra})
    assert resp.status_code == 201
    return resp.json()


def _put(client: TestClient, entity_id: str, kind: str, payload: dict) -> None:
    resp = client.post("/evidence", json={"entity_id": entity_id, "kind": kind, "payload": payload})
    assert resp.status_code == 200


class TestIssues:
    def test_create_and_get(self, client: TestClient) -> None:
        issue = _create_issue(client, labels=["bug"])
        assert issue["status"] == "CREATED"

        resp = client.get(f"/issues/{issue['short_id']}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == issue["id"]
        assert "SPEC_READY" in data["valid_transitions"]
        assert "DONE" not in data["valid_transitions"]

    def test_unknown_issue(self, client: TestClient) -> None:
        resp = client.get("/issues/nope")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"


class TestTransition:
    def test_blocked_then_allowed(self, client: TestClient) -> None:
        issue = _create_issue(client)
        body = {"issue_id": issue["id"], "to_state": "SPEC_READY"}

        blocked = client.post("/transition", json=body)
        assert blocked.status_code == 422
        assert blocked.json()["code"] == "BLOCKED"
        assert len(blocked.json()["reasons"]) == 2

        _put(client, issue["id"], "spec", {"complete": True, "acceptance_criteria": ["works"]})
        allowed = client.post("/transition", json=body)
        assert allowed.status_code == 200
        data = allowed.json()
        assert data["allowed"] is True
        assert data["new_state"] == "SPEC_READY"
        assert data["idempotency_key"].startswith("transition:")

    def test_idempotent_key(self, client: TestClient) -> None:
        issue = _create_issue(client)
        body = {"issue_id": issue["id"], "to_state": "HOLD", "idempotency_key": "hold-1"}
        first = client.post("/transition", json=body).json()
        second = client.post("/transition", json=body).json()
        assert first["replayed"] is False
        assert second["replayed"] is True
        assert second["version"] == first["version"]

    def test_invalid_edge(self, client: TestClient) -> None:
        issue = _create_issue(client)
        resp = client.post("/transition", json={"issue_id": issue["id"], "to_state": "DONE"})
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_TRANSITION"
        assert resp.json()["reasons"][0]["type"] == "precondition"

    def test_bad_body(self, client: TestClient) -> None:
        resp = client.post("/transition", json={"issue_id": "x", "to_state": "DONE", "surprise": 1})
        assert resp.status_code == 422
        data = resp.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["reasons"]


class TestPlaybooks:
    def test_list(self, client: TestClient) -> None:
        ids = [p["id"] for p in client.get("/playbooks").json()["playbooks"]]
        assert "restart-service" in ids

    def test_run_and_replay(self, client: TestClient) -> None:
        incident = client.post(
            "/incidents", json={"incident_key": "inc-9", "category": "SERVICE_UNHEALTHY"}
        ).json()
        _put(client, incident["id"], "ecs", {"ref": {"service": "api"}})
        body = {"incident_id": "inc-9", "playbook_id": "restart-service", "inputs": {"service": "api"}}

        first = client.post("/playbooks/run", json=body)
        assert first.status_code == 200
        run = first.json()
        assert run["status"] == "SUCCEEDED"
        assert run["run_key"].startswith("inc-9:restart-service:")
        assert run["replayed"] is False

        second = client.post("/playbooks/run", json=body).json()
        assert second["run_id"] == run["run_id"]
        assert second["replayed"] is True
        assert second["skip_reason"] == "idempotent_replay"

        detail = client.get(f"/runs/{run['run_id']}").json()
        assert [s["step_id"] for s in detail["steps"]] == ["drain", "restart", "verify", "notify"]

    def test_denied_playbook_is_skipped(self, client: TestClient) -> None:
        client.post("/incidents", json={"incident_key": "inc-10", "category": "DEPLOY_VERIFICATION_FAILED"})
        resp = client.post("/playbooks/run", json={"incident_id": "inc-10", "playbook_id": "redeploy-lkg"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "SKIPPED"
        assert resp.json()["skip_reason"] == "LAWBOOK_DENIED"

    def test_unknown_playbook(self, client: TestClient) -> None:
        client.post("/incidents", json={"incident_key": "inc-11"})
        resp = client.post("/playbooks/run", json={"incident_id": "inc-11", "playbook_id": "nope"})
        assert resp.status_code == 404

    def test_resume_unknown_run(self, client: TestClient) -> None:
        assert client.post("/runs/missing/resume").status_code == 404

    def test_no_lawbook_denies(self, tmp_path: Path) -> None:
        services = Services(_config(tmp_path, lawbook=None))
        try:
            with TestClient(create_app(services=services)) as c:
                c.post("/incidents", json={"incident_key": "inc-12", "category": "SERVICE_UNHEALTHY"})
                resp = c.post("/playbooks/run", json={"incident_id": "inc-12", "playbook_id": "restart-service"})
                assert resp.json()["status"] == "SKIPPED"
                assert resp.json()["skip_reason"] == "LAWBOOK_DENIED"
        finally:
            services.close()


class TestDrift:
    def test_detect_and_resolve(self, client: TestClient) -> None:
        issue = _create_issue(client, github_ref="acme/api#12")
        _put(client, "acme/api#12", "github_snapshot", {"issue_state": "open", "labels": ["status:verified"]})

        detection = client.get(f"/drift/{issue['id']}").json()
        assert detection["drift_detected"] is True
        assert detection["drift_types"] == ["LABEL_MISMATCH"]
        assert detection["severity"] == "LOW"

        manual = [{"kind": "SET_STATUS", "params": {"to_state": "HOLD"}}]
        unconfirmed = client.post(
            "/drift/resolve", json={"detection_id": detection["id"], "manual_actions": manual}
        )
        assert unconfirmed.status_code == 409
        assert unconfirmed.json()["code"] == "ERR_CONFIRMATION_REQUIRED"

        confirmed = client.post(
            "/drift/resolve",
            json={"detection_id": detection["id"], "manual_actions": manual, "confirmation": True},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["manual_override"] is True
        assert client.get(f"/issues/{issue['id']}").json()["status"] == "HOLD"

        again = client.post(
            "/drift/resolve",
            json={"detection_id": detection["id"], "manual_actions": manual, "confirmation": True},
        )
        assert again.status_code == 409
        assert again.json()["code"] == "ALREADY_RESOLVED"

    def test_external_action_without_github(self, client: TestClient) -> None:
        issue = _create_issue(client, github_ref="acme/api#13")
        _put(client, "acme/api#13", "github_snapshot", {"issue_state": "open", "labels": []})
        detection = client.get(f"/drift/{issue['id']}").json()
        resp = client.post(
            "/drift/resolve",
            json={
                "detection_id": detection["id"],
                "suggestion_id": detection["suggestions"][0]["id"],
                "confirmation": True,
            },
        )
        assert resp.status_code == 502
        assert resp.json()["code"] == "EXTERNAL_ACTION_FAILED"


class TestAudit:
    def test_events_for_issue(self, client: TestClient) -> None:
        issue = _create_issue(client)
        client.post("/transition", json={"issue_id": issue["id"], "to_state": "HOLD"})
        data = client.get(f"/audit/{issue['id']}").json()
        types = [e["event_type"] for e in data["events"]]
        assert types == ["issue_created", "issue_transitioned"]
        assert data["events"][1]["payload"]["to"] == "HOLD"
