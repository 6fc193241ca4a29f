"""Unit tests for lawbook parsing, validation and the file-backed provider."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from driftwarden.core.evidence.predicates import FieldEquals
from driftwarden.core.policy.model import GuardrailEnforcement, Lawbook
from driftwarden.core.policy.parser import (
    LawbookProvider,
    PolicyParseError,
    load_lawbook,
    parse_lawbook,
    validate_lawbook_file,
)

LAWBOOK_YAML = """
version: 3
name: production
remediation:
  enabled: true
  allowed_playbooks: [restart-service]
  allowed_actions: [RESTART_SERVICE, NOTIFY_SLACK]
  max_runs_per_incident: 2
  cooldown_minutes: 15
evidence:
  required_kinds_by_category:
    ECS_TASK_CRASHLOOP: [ecs]
guardrails:
  - id: security-review
    description: security sign-off required
    requires:
      - type: field_equals
        kind: security_review
        path: [state]
        value: approved
  - id: change-freeze
    enforcement: advisory
    deny: true
"""


class TestParseLawbook:
    def test_full_document(self) -> None:
        lb = parse_lawbook(LAWBOOK_YAML)
        assert lb.version == "3"
        assert lb.name == "production"
        assert lb.remediation.enabled
        assert lb.remediation.cooldown_minutes == 15
        assert lb.evidence.required_kinds_by_category == {"ECS_TASK_CRASHLOOP": ["ecs"]}
        guard = lb.guardrail("security-review")
        assert guard is not None
        assert isinstance(guard.requires[0], FieldEquals)
        assert lb.guardrail("change-freeze").enforcement == GuardrailEnforcement.ADVISORY
        assert lb.guardrail("nope") is None

    def test_defaults_are_deny(self) -> None:
        lb = parse_lawbook("version: '1'\n")
        assert lb.remediation.enabled is False
        assert lb.remediation.allowed_playbooks == []
        assert lb.remediation.max_runs_per_incident == 3

    def test_yaml_syntax_error(self) -> None:
        with pytest.raises(PolicyParseError, match="YAML syntax error"):
            parse_lawbook("version: [unclosed\n")

    def test_not_a_mapping(self) -> None:
        with pytest.raises(PolicyParseError, match="must be a YAML mapping"):
            parse_lawbook("- a\n- b\n")

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(PolicyParseError, match="validation failed"):
            parse_lawbook("version: '1'\nsurprise: true\n")

    def test_missing_version(self) -> None:
        with pytest.raises(PolicyParseError):
            parse_lawbook("name: x\n")

    def test_duplicate_guardrail_ids(self) -> None:
        text = "version: '1'\nguardrails:\n  - id: g1\n  - id: g1\n"
        with pytest.raises(PolicyParseError, match="Duplicate guardrail id"):
            parse_lawbook(text)

    def test_negative_limit_rejected(self) -> None:
        with pytest.raises(PolicyParseError):
            parse_lawbook("version: '1'\nremediation:\n  max_runs_per_incident: -1\n")


class TestStamp:
    def test_stamp_format(self) -> None:
        lb = parse_lawbook(LAWBOOK_YAML)
        version, digest = lb.stamp().split("@")
        assert version == "3"
        assert len(digest) == 12

    def test_stamp_changes_with_content(self) -> None:
        a = Lawbook(version="1")
        b = Lawbook(version="1", name="other")
        assert a.stamp() != b.stamp()
        assert a.stamp() == Lawbook(version="1").stamp()


class TestLoadLawbook:
    def test_load_file(self, tmp_path: Path) -> None:
        path = tmp_path / "lawbook.yaml"
        path.write_text(LAWBOOK_YAML)
        assert load_lawbook(path).name == "production"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(PolicyParseError, match="not found"):
            load_lawbook(tmp_path / "absent.yaml")

    def test_validate_file(self, tmp_path: Path) -> None:
        good = tmp_path / "good.yaml"
        good.write_text(LAWBOOK_YAML)
        bad = tmp_path / "bad.yaml"
        bad.write_text("version: '1'\nremediation:\n  enabled: maybe\n")
        assert validate_lawbook_file(good) == []
        errors = validate_lawbook_file(bad)
        assert errors
        assert any("enabled" in e for e in errors)


class TestLawbookProvider:
    def test_in_memory(self) -> None:
        lb = Lawbook(version="1")
        assert LawbookProvider(lawbook=lb).get_active_policy() is lb

    def test_no_lawbook(self) -> None:
        assert LawbookProvider().get_active_policy() is None

    def test_missing_file_denies(self, tmp_path: Path) -> None:
        assert LawbookProvider(tmp_path / "absent.yaml").get_active_policy() is None

    def test_invalid_file_denies(self, tmp_path: Path) -> None:
        path = tmp_path / "lawbook.yaml"
        path.write_text("not: [valid\n")
        assert LawbookProvider(path).get_active_policy() is None

    def test_reload_on_change(self, tmp_path: Path) -> None:
        path = tmp_path / "lawbook.yaml"
        path.write_text("version: '1'\n")
        provider = LawbookProvider(path)
        assert provider.get_active_policy().version == "1"

        path.write_text("version: '2'\n")
        st = path.stat()
        os.utime(path, (st.st_atime + 10, st.st_mtime + 10))
        assert provider.get_active_policy().version == "2"
