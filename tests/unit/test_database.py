"""Unit tests for driftwarden.core.store: migrations, transactions and guarded updates."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from driftwarden.core.store.database import Database
from driftwarden.core.store.migrations import LATEST_SCHEMA_VERSION, get_user_version


def _incident(db: Database, key: str = "inc-1") -> str:
    db.upsert_incident(f"id-{key}", key, "title", "ECS_TASK_CRASHLOOP")
    return db.get_incident(key)["id"]


def _run(db: Database, run_id: str, incident_id: str, status: str = "PLANNED", key: str = "k") -> None:
    db.insert_run(run_id, key, db.next_attempt(key), incident_id, "pb", "1", status, "1@abc", "h", {})


class TestMigrations:
    def test_fresh_database_at_latest_version(self, db: Database) -> None:
        assert get_user_version(db._db) == LATEST_SCHEMA_VERSION

    def test_reconnect_is_idempotent(self, tmp_path: Path) -> None:
        path = tmp_path / "again.db"
        first = Database(path)
        first.connect()
        first.insert_issue("i1", "s1", "t", [], {})
        first.close()

        second = Database(path)
        second.connect()
        assert second.get_issue("i1") is not None
        assert get_user_version(second._db) == LATEST_SCHEMA_VERSION
        second.close()

    def test_newer_schema_refused(self, tmp_path: Path) -> None:
        path = tmp_path / "future.db"
        conn = sqlite3.connect(str(path))
        conn.execute(f"PRAGMA user_version = {LATEST_SCHEMA_VERSION + 1}")
        conn.close()
        with pytest.raises(RuntimeError, match="schema version"):
            Database(path).connect()

    def test_wal_mode(self, db: Database) -> None:
        mode = db._db.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"


class TestTransaction:
    def test_commit(self, db: Database) -> None:
        with db.transaction():
            db.insert_issue("i1", "s1", "t", [], {})
        assert db.get_issue("i1") is not None

    def test_rollback_on_error(self, db: Database) -> None:
        with pytest.raises(ValueError):
            with db.transaction():
                db.insert_issue("i1", "s1", "t", [], {})
                raise ValueError("boom")
        assert db.get_issue("i1") is None

    def test_nested_joins_outer(self, db: Database) -> None:
        with pytest.raises(ValueError):
            with db.transaction():
                with db.transaction():
                    db.insert_issue("i1", "s1", "t", [], {})
                raise ValueError("outer fails")
        assert db.get_issue("i1") is None


class TestIssues:
    def test_lookup_by_short_id(self, db: Database) -> None:
        db.insert_issue("i1", "short1", "t", ["b", "a"], {"k": 1})
        row = db.get_issue("short1")
        assert row["id"] == "i1"
        assert row["status"] == "CREATED"
        assert row["version"] == 1

    def test_compare_and_set_wins_once(self, db: Database) -> None:
        db.insert_issue("i1", "s1", "t", [], {})
        assert db.compare_and_set_issue_status("i1", 1, "SPEC_READY") == 1
        assert db.compare_and_set_issue_status("i1", 1, "HOLD") == 0
        row = db.get_issue("i1")
        assert row["status"] == "SPEC_READY"
        assert row["version"] == 2

    def test_single_active_issue(self, db: Database) -> None:
        db.insert_issue("i1", "s1", "a", [], {})
        db.insert_issue("i2", "s2", "b", [], {})
        with db.transaction():
            assert db.set_active_issue("i1", "ops") is None
        with db.transaction():
            assert db.set_active_issue("i2", "ops") == "i1"
        assert db.get_active_issue()["id"] == "i2"
        assert db.get_issue("i1")["is_active"] == 0

    def test_second_active_holder_rejected_by_index(self, db: Database) -> None:
        db.insert_issue("i1", "s1", "a", [], {})
        db.insert_issue("i2", "s2", "b", [], {})
        db._db.execute("UPDATE issues SET is_active = 1 WHERE id = 'i1'")
        with pytest.raises(sqlite3.IntegrityError):
            db._db.execute("UPDATE issues SET is_active = 1 WHERE id = 'i2'")


class TestEvidenceFacts:
    def test_insert_is_idempotent(self, db: Database) -> None:
        assert db.insert_evidence_fact("e1", "ci_checks", {"conclusion": "success"}, "h1") is True
        assert db.insert_evidence_fact("e1", "ci_checks", {"conclusion": "success"}, "h1") is False
        assert len(db.list_evidence_facts("e1")) == 1

    def test_repeat_moves_observed_at_forward(self, db: Database) -> None:
        db.insert_evidence_fact("e1", "ci_checks", {"c": 1}, "h1", "2026-01-01T10:00:00.000000+00:00")
        db.insert_evidence_fact("e1", "ci_checks", {"c": 2}, "h2", "2026-01-01T11:00:00.000000+00:00")
        db.insert_evidence_fact("e1", "ci_checks", {"c": 1}, "h1", "2026-01-01T12:00:00.000000+00:00")
        db.insert_evidence_fact("e1", "ci_checks", {"c": 2}, "h2", "2026-01-01T09:00:00.000000+00:00")
        rows = db.list_evidence_facts("e1")
        assert [r["content_hash"] for r in rows] == ["h2", "h1"]
        assert rows[0]["observed_at"] == "2026-01-01T11:00:00.000000+00:00"

    def test_filter_by_kind(self, db: Database) -> None:
        db.insert_evidence_fact("e1", "ci_checks", {}, "h1")
        db.insert_evidence_fact("e1", "review", {}, "h2")
        rows = db.list_evidence_facts("e1", ["review"])
        assert [r["kind"] for r in rows] == ["review"]


class TestAuditEvents:
    def test_duplicate_event_hash_dropped(self, db: Database) -> None:
        assert db.append_audit_event("ev1", "hash-a", "t", {"a": 1}, "s") is True
        assert db.append_audit_event("ev2", "hash-a", "t", {"a": 1}, "s") is False
        assert len(db.list_audit_events()) == 1

    def test_chain_links_previous_event(self, db: Database) -> None:
        db.append_audit_event("ev1", "hash-a", "t", {"a": 1}, "s")
        db.append_audit_event("ev2", "hash-b", "t", {"a": 2}, "s")
        first, second = db.list_audit_events()
        assert first["prev_hash"] == ""
        assert second["prev_hash"] == first["chain_hash"]

    def test_filter_by_subject_and_limit(self, db: Database) -> None:
        for i in range(3):
            db.append_audit_event(f"ev{i}", f"h{i}", "t", {"i": i}, "s1")
        db.append_audit_event("other", "h-other", "t", {}, "s2")
        assert len(db.list_audit_events("s1")) == 3
        assert len(db.list_audit_events("s1", limit=2)) == 2


class TestRuns:
    def test_one_live_run_per_key(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id)
        with pytest.raises(sqlite3.IntegrityError):
            _run(db, "r2", incident_id)

    def test_failed_run_releases_key(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id, status="FAILED")
        _run(db, "r2", incident_id)
        assert db.get_run("r2")["attempt"] == 2
        assert db.get_live_run_by_key("k")["id"] == "r2"

    def test_skipped_runs_do_not_hold_key(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id, status="SKIPPED")
        _run(db, "r2", incident_id)
        assert db.count_executed_runs(incident_id) == 1

    def test_advance_run_only_from_allowed(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id)
        assert db.advance_run("r1", "RUNNING", ("PLANNED",)) == 1
        assert db.advance_run("r1", "RUNNING", ("PLANNED",)) == 0
        assert db.advance_run("r1", "SUCCEEDED", ("RUNNING",), result={"ok": True}) == 1
        assert db.get_run("r1")["status"] == "SUCCEEDED"


class TestSteps:
    def test_steps_never_regress(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id)
        db.insert_step("s1", "r1", "restart", 0, "RESTART_SERVICE", "step:abc", False, {})
        assert db.advance_step("s1", "RUNNING", ("PLANNED",)) == 1
        assert db.advance_step("s1", "SUCCEEDED", ("RUNNING",), output={"ok": 1}) == 1
        assert db.advance_step("s1", "RUNNING", ("PLANNED",)) == 0
        row = db.get_step("s1")
        assert row["status"] == "SUCCEEDED"
        assert row["started_at"] is not None
        assert row["finished_at"] is not None

    def test_find_succeeded_step_by_key(self, db: Database) -> None:
        incident_id = _incident(db)
        _run(db, "r1", incident_id)
        db.insert_step("s1", "r1", "restart", 0, "RESTART_SERVICE", "step:abc", False, {})
        assert db.find_succeeded_step("step:abc") is None
        db.advance_step("s1", "RUNNING", ("PLANNED",))
        db.advance_step("s1", "SUCCEEDED", ("RUNNING",), output={})
        assert db.find_succeeded_step("step:abc")["id"] == "s1"


class TestExternalActions:
    def test_recorded_once(self, db: Database) -> None:
        assert db.record_external_action("key-1", "COMMENT", "o/r#1", {"id": 1}) is True
        assert db.record_external_action("key-1", "COMMENT", "o/r#1", {"id": 2}) is False
        assert db.get_external_action("key-1")["result"] == '{"id":1}'
