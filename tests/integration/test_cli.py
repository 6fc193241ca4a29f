"""Integration tests for the click CLI, run through CliRunner against a temp config."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from driftwarden import __version__
from driftwarden.cli.main import cli

LAWBOOK = """
version: "2"
remediation:
  enabled: true
  allowed_playbooks: [restart-service]
  allowed_actions: [DRAIN_TASKS, RESTART_SERVICE, RUN_VERIFICATION, NOTIFY_SLACK]
  max_runs_per_incident: 5
"""


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("GITHUB_TOKEN", "DRIFTWARDEN_GITHUB_TOKEN", "DRIFTWARDEN_CONFIG", "DRIFTWARDEN_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    lawbook = tmp_path / "lawbook.yaml"
    lawbook.write_text(LAWBOOK)
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
[database]
path = "{(tmp_path / "cli.db").as_posix()}"

[lawbook]
path = "{lawbook.as_posix()}"

[remediation]
step_backoff_seconds = 0
replay_wait_seconds = 0.1
"""
    )
    return path


@pytest.fixture
def invoke(config_file: Path):
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(cli, ["--config", str(config_file), "--log-level", "ERROR", *args])

    return _invoke


def _json(result) -> dict:
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestBasics:
    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_lawbook_validate(self, tmp_path: Path) -> None:
        good = tmp_path / "good.yaml"
        good.write_text(LAWBOOK)
        assert CliRunner().invoke(cli, ["lawbook", "validate", str(good)]).exit_code == 0

        bad = tmp_path / "bad.yaml"
        bad.write_text("version: '1'\nremediation:\n  surprise: true\n")
        assert CliRunner().invoke(cli, ["lawbook", "validate", str(bad)]).exit_code == 1

    def test_invalid_config_exits_2(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.toml"
        path.write_text("[logging\n")
        result = CliRunner().invoke(cli, ["--config", str(path), "--log-level", "ERROR", "issue", "list"])
        assert result.exit_code == 2


class TestIssueCommands:
    def test_lifecycle(self, invoke) -> None:
        issue = _json(invoke("issue", "create", "Fix login", "--label", "bug", "--json"))
        assert issue["status"] == "CREATED"
        assert issue["labels"] == ["bug"]

        blocked = invoke("issue", "transition", issue["id"], "spec_ready")
        assert blocked.exit_code == 3

        put = invoke(
            "evidence", "put", issue["id"], "spec",
            "--payload", '{"complete": true, "acceptance_criteria": ["works"]}',
        )
        assert put.exit_code == 0

        moved = _json(invoke("issue", "transition", issue["id"], "spec_ready", "--json"))
        assert moved["new_state"] == "SPEC_READY"

        shown = _json(invoke("issue", "show", issue["short_id"], "--json"))
        assert shown["status"] == "SPEC_READY"
        assert "IMPLEMENTING" in shown["valid_transitions"]

    def test_invalid_edge_exits_3(self, invoke) -> None:
        issue = _json(invoke("issue", "create", "Fix login", "--json"))
        assert invoke("issue", "transition", issue["id"], "DONE").exit_code == 3

    def test_unknown_issue_exits_5(self, invoke) -> None:
        assert invoke("issue", "show", "nope").exit_code == 5

    def test_bad_meta(self, invoke) -> None:
        assert invoke("issue", "create", "x", "--meta", "novalue").exit_code == 2

    def test_list_json(self, invoke) -> None:
        invoke("issue", "create", "One")
        invoke("issue", "create", "Two")
        titles = sorted(i["title"] for i in _json(invoke("issue", "list", "--json")))
        assert titles == ["One", "Two"]

    def test_evidence_put_twice(self, invoke) -> None:
        first = _json(invoke("evidence", "put", "e-1", "ci_checks", "--payload", '{"conclusion": "success"}', "--json"))
        second = _json(invoke("evidence", "put", "e-1", "ci_checks", "--payload", '{"conclusion": "success"}', "--json"))
        assert first["inserted"] is True
        assert second["inserted"] is False
        listed = _json(invoke("evidence", "list", "e-1", "--json"))
        assert len(listed) == 1


class TestPlaybookCommands:
    def test_run_and_replay(self, invoke) -> None:
        incident = _json(invoke("incident", "open", "inc-1", "--category", "SERVICE_UNHEALTHY", "--json"))
        invoke("evidence", "put", incident["id"], "ecs", "--payload", '{"ref": {"service": "api"}}')

        run = _json(invoke("playbook", "run", "inc-1", "restart-service", "--input", "service=api", "--json"))
        assert run["status"] == "SUCCEEDED"
        assert [s["status"] for s in run["steps"]] == ["SUCCEEDED"] * 4

        replay = _json(invoke("playbook", "run", "inc-1", "restart-service", "--input", "service=api", "--json"))
        assert replay["run_id"] == run["run_id"]
        assert replay["replayed"] is True

        status = _json(invoke("playbook", "status", run["run_id"], "--json"))
        assert status["status"] == "SUCCEEDED"

    def test_plan_only_missing_evidence(self, invoke) -> None:
        invoke("incident", "open", "inc-2", "--category", "SERVICE_UNHEALTHY")
        planned = _json(invoke("playbook", "run", "inc-2", "restart-service", "--plan-only", "--json"))
        assert planned["status"] == "SKIPPED"
        assert planned["skip_reason"] == "EVIDENCE_MISSING"

    def test_list(self, invoke) -> None:
        ids = [p["id"] for p in _json(invoke("playbook", "list", "--json"))]
        assert "service-health-reset" in ids

    def test_bad_inputs(self, invoke) -> None:
        assert invoke("playbook", "run", "inc-1", "restart-service", "--inputs", "[1]").exit_code == 2


class TestDriftCommands:
    def test_detect_and_resolve(self, invoke) -> None:
        issue = _json(invoke("issue", "create", "Fix login", "--github", "acme/api#12", "--json"))
        invoke(
            "evidence", "put", "acme/api#12", "github_snapshot",
            "--payload", '{"issue_state": "open", "labels": ["status:verified"]}',
        )

        detection = _json(invoke("drift", "detect", issue["id"], "--stored", "--json"))
        assert detection["drift_types"] == ["LABEL_MISMATCH"]

        action = '{"kind": "SET_STATUS", "params": {"to_state": "HOLD"}}'
        unconfirmed = invoke("drift", "resolve", detection["id"], "--action", action)
        assert unconfirmed.exit_code == 3

        resolution = _json(invoke("drift", "resolve", detection["id"], "--action", action, "--yes", "--json"))
        assert resolution["manual_override"] is True

        again = invoke("drift", "resolve", detection["id"], "--action", action, "--yes")
        assert again.exit_code == 4

        shown = _json(invoke("drift", "show", detection["id"], "--json"))
        assert shown["resolved"] is True
        assert _json(invoke("issue", "show", issue["id"], "--json"))["status"] == "HOLD"


class TestAuditCommands:
    def test_verify_and_export(self, invoke) -> None:
        issue = _json(invoke("issue", "create", "Fix login", "--json"))
        invoke("issue", "transition", issue["id"], "HOLD")

        verified = invoke("audit", "verify")
        assert verified.exit_code == 0
        assert "VALID" in verified.stdout

        as_json = _json(invoke("audit", "verify", "--json"))
        assert as_json["valid"] is True

        exported = invoke("audit", "export", "--subject", issue["id"])
        lines = [json.loads(line) for line in exported.stdout.splitlines()]
        assert [e["event_type"] for e in lines] == ["issue_created", "issue_transitioned"]
