"""
Schema migrations for the Driftwarden SQLite database.

Uses PRAGMA user_version as the version counter (atomic, no extra table).
Each migration is an idempotent function that upgrades from version N to N+1.

Migration contract:
  - Migrations run inside an explicit transaction (BEGIN / COMMIT).
  - Each migration MUST be idempotent: safe to re-run after a mid-flight crash.
  - After all migrations succeed, PRAGMA user_version is bumped.
  - If any migration fails, the transaction is rolled back and the error is
    surfaced with the DB path so the operator can take recovery action.

Version history:
  0 → 1: Lifecycle schema (issues, incidents, evidence_facts, audit_events)
  1 → 2: Reconciliation schema (drift_detections, drift_resolutions,
         remediation_runs, remediation_steps, external_actions)

Uniqueness rules enforced here rather than in process memory:
  issues.is_active                     at most one active issue
  evidence_facts(entity_id, kind, hash): idempotent ingestion
  audit_events.event_hash              at-most-once event storage
  remediation_runs.run_key (live runs): at most one live run per run key
  remediation_steps(run_id, step_id)   one row per planned step
  drift_resolutions.detection_id       a detection is resolved once
  external_actions.idempotency_key     an external side effect applies once
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path

import structlog

logger = structlog.get_logger()

# Bump this when adding a new migration.
LATEST_SCHEMA_VERSION = 2


# ---------------------------------------------------------------------------
# Individual migrations
# ---------------------------------------------------------------------------


def _migrate_0_to_1(conn: sqlite3.Connection) -> None:
    """Version 0 → 1: issues, incidents, evidence facts and the audit log."""
    # -- issues -------------------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS issues (
            id                TEXT PRIMARY KEY,
            short_id          TEXT NOT NULL UNIQUE,
            title             TEXT NOT NULL,
            status            TEXT NOT NULL DEFAULT 'CREATED',
            labels            TEXT NOT NULL DEFAULT '[]',
            metadata          TEXT NOT NULL DEFAULT '{}',
            github_ref        TEXT NOT NULL DEFAULT '',
            version           INTEGER NOT NULL DEFAULT 1,
            is_active         INTEGER NOT NULL DEFAULT 0,
            activated_at      TEXT,
            activated_by      TEXT,
            created_at        TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at        TEXT NOT NULL DEFAULT (datetime('now')),
            status_changed_at TEXT
        )
    """)
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_issues_single_active
            ON issues(is_active) WHERE is_active = 1
    """)

    # -- incidents ----------------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS incidents (
            id            TEXT PRIMARY KEY,
            incident_key  TEXT NOT NULL UNIQUE,
            title         TEXT NOT NULL DEFAULT '',
            category      TEXT NOT NULL DEFAULT '',
            severity      TEXT NOT NULL DEFAULT 'P2',
            issue_id      TEXT REFERENCES issues(id),
            created_at    TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    # -- evidence_facts -----------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evidence_facts (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_id     TEXT NOT NULL,
            kind          TEXT NOT NULL,
            payload       TEXT NOT NULL DEFAULT '{}',
            content_hash  TEXT NOT NULL,
            observed_at   TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE(entity_id, kind, content_hash)
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_evidence_entity
            ON evidence_facts(entity_id, kind)
    """)

    # -- audit_events -------------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_events (
            seq         INTEGER PRIMARY KEY AUTOINCREMENT,
            id          TEXT NOT NULL UNIQUE,
            event_hash  TEXT NOT NULL UNIQUE,
            event_type  TEXT NOT NULL,
            subject_id  TEXT NOT NULL DEFAULT '',
            payload     TEXT NOT NULL DEFAULT '{}',
            created_at  TEXT NOT NULL DEFAULT (datetime('now')),
            prev_hash   TEXT NOT NULL DEFAULT '',
            chain_hash  TEXT NOT NULL DEFAULT ''
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_subject
            ON audit_events(subject_id, seq)
    """)


def _migrate_1_to_2(conn: sqlite3.Connection) -> None:
    """Version 1 → 2: drift detections, remediation runs, external action log."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS drift_detections (
            id              TEXT PRIMARY KEY,
            entity_id       TEXT NOT NULL,
            drift_detected  INTEGER NOT NULL DEFAULT 0,
            drift_types     TEXT NOT NULL DEFAULT '[]',
            severity        TEXT NOT NULL DEFAULT 'LOW',
            evidence        TEXT NOT NULL DEFAULT '{}',
            suggestions     TEXT NOT NULL DEFAULT '[]',
            result_hash     TEXT NOT NULL DEFAULT '',
            resolved        INTEGER NOT NULL DEFAULT 0,
            detected_at     TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_drift_entity
            ON drift_detections(entity_id, detected_at)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS drift_resolutions (
            id               TEXT PRIMARY KEY,
            detection_id     TEXT NOT NULL UNIQUE REFERENCES drift_detections(id),
            suggestion_id    TEXT,
            manual_override  INTEGER NOT NULL DEFAULT 0,
            actions          TEXT NOT NULL DEFAULT '[]',
            outcome          TEXT NOT NULL DEFAULT '{}',
            actor            TEXT NOT NULL DEFAULT '',
            resolved_at      TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS remediation_runs (
            id                TEXT PRIMARY KEY,
            run_key           TEXT NOT NULL,
            attempt           INTEGER NOT NULL DEFAULT 1,
            incident_id       TEXT NOT NULL REFERENCES incidents(id),
            playbook_id       TEXT NOT NULL,
            playbook_version  TEXT NOT NULL,
            status            TEXT NOT NULL DEFAULT 'PLANNED',
            lawbook_version   TEXT NOT NULL,
            inputs_hash       TEXT NOT NULL,
            planned           TEXT NOT NULL DEFAULT '{}',
            result            TEXT NOT NULL DEFAULT '{}',
            skip_reason       TEXT,
            created_at        TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at        TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_live_key
            ON remediation_runs(run_key)
         WHERE status IN ('PLANNED', 'RUNNING', 'SUCCEEDED')
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_runs_incident
            ON remediation_runs(incident_id, created_at)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS remediation_steps (
            id               TEXT PRIMARY KEY,
            run_id           TEXT NOT NULL REFERENCES remediation_runs(id),
            step_id          TEXT NOT NULL,
            position         INTEGER NOT NULL,
            action_type      TEXT NOT NULL,
            status           TEXT NOT NULL DEFAULT 'PLANNED',
            idempotency_key  TEXT NOT NULL,
            best_effort      INTEGER NOT NULL DEFAULT 0,
            input            TEXT NOT NULL DEFAULT '{}',
            output           TEXT,
            error            TEXT,
            started_at       TEXT,
            finished_at      TEXT,
            UNIQUE(run_id, step_id)
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_steps_idempotency
            ON remediation_steps(idempotency_key, status)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS external_actions (
            idempotency_key  TEXT PRIMARY KEY,
            action_type      TEXT NOT NULL,
            target           TEXT NOT NULL DEFAULT '',
            result           TEXT NOT NULL DEFAULT '{}',
            applied_at       TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)


_MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {
    0: _migrate_0_to_1,
    1: _migrate_1_to_2,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_user_version(conn: sqlite3.Connection) -> int:
    """Read the current PRAGMA user_version."""
    row = conn.execute("PRAGMA user_version").fetchone()
    return row[0] if row else 0


def _set_user_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {version}")  # noqa: S608


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_migrations(conn: sqlite3.Connection, db_path: Path) -> None:
    """
    Run all pending schema migrations on *conn*.

    Raises ``RuntimeError`` with a user-friendly message (including the DB
    path) if any migration fails.
    """
    current = get_user_version(conn)

    if current > LATEST_SCHEMA_VERSION:
        raise RuntimeError(
            f"Database {db_path} has schema version {current}, but this build of "
            f"Driftwarden only supports up to version {LATEST_SCHEMA_VERSION}. "
            f"Please upgrade Driftwarden."
        )

    if current == LATEST_SCHEMA_VERSION:
        return

    logger.info("migration_starting", from_version=current, to_version=LATEST_SCHEMA_VERSION)

    for from_version in range(current, LATEST_SCHEMA_VERSION):
        migration = _MIGRATIONS.get(from_version)
        if migration is None:
            raise RuntimeError(
                f"No migration registered for v{from_version} → v{from_version + 1}. "
                f"Database: {db_path}"
            )

        target = from_version + 1
        logger.info("migration_step", from_version=from_version, to_version=target)

        try:
            conn.execute("BEGIN")
            migration(conn)
            _set_user_version(conn, target)
            conn.execute("COMMIT")
        except Exception as exc:
            conn.execute("ROLLBACK")
            raise RuntimeError(
                f"Schema migration v{from_version} → v{target} failed: {exc}\n"
                f"Database path: {db_path}"
            ) from exc

    logger.info("migration_complete", version=get_user_version(conn))
