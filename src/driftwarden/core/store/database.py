"""
SQLite-backed persistence store.

Schema (9 tables):
  issues             lifecycle records with optimistic-concurrency version
  incidents          operational incidents that remediation runs target
  evidence_facts     append/upsert-by-natural-key evidence
  audit_events       append-only audit log with hash chain
  drift_detections   one row per drift detection run per entity
  drift_resolutions  at most one resolution per detection
  remediation_runs   playbook runs keyed by run_key
  remediation_steps  per-step execution records
  external_actions   applied external side effects by idempotency key

Every guard is a single SQL statement whose rowcount tells the caller
whether it won:

  UPDATE issues
     SET status = ?, version = version + 1, ...
   WHERE id = ? AND version = ?

  UPDATE remediation_steps
     SET status = ?, ...
   WHERE id = ? AND status IN (<allowed predecessors>)

A rowcount of 0 means another writer got there first; the caller re-reads
and reports CONCURRENT_MODIFICATION or treats the step as already advanced.

Thread safety:
  SQLite WAL mode is enabled. The connection is opened with
  check_same_thread=False and autocommit (isolation_level=None); every
  multi-statement write goes through ``transaction()``, which issues
  BEGIN IMMEDIATE under a re-entrant lock so the state change and its audit
  event commit together. Separate processes serialise on SQLite's write
  lock (busy timeout below).

Schema versioning:
  Uses PRAGMA user_version and the migrations module. On connect(), WAL mode
  and foreign keys are set first, then run_migrations() applies any pending
  schema changes idempotently.
"""

from __future__ import annotations

import hashlib
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from driftwarden.core.hashing import canonical_json

logger = structlog.get_logger()

_BUSY_TIMEOUT_SECONDS = 10.0


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


def chain_digest(prev_hash: str, event_id: str, event_type: str, subject_id: str, payload: str) -> str:
    """Hash-chain link for one audit event."""
    chain_input = f"{prev_hash}{event_id}{event_type}{subject_id}{payload}"
    return hashlib.sha256(chain_input.encode()).hexdigest()


class Database:
    """SQLite persistence layer for Driftwarden."""

    def __init__(self, db_path: Path) -> None:
        self._path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> None:
        from driftwarden.core.store.migrations import run_migrations

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._path),
            check_same_thread=False,
            isolation_level=None,
            timeout=_BUSY_TIMEOUT_SECONDS,
        )
        self._conn.row_factory = sqlite3.Row

        # Set pragmas before any DDL / migration work
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        # Run idempotent schema migrations (fresh install or upgrade)
        run_migrations(self._conn, self._path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside BEGIN IMMEDIATE / COMMIT.

        Nested use joins the outermost transaction. Any exception rolls the
        whole transaction back and propagates.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._db
                finally:
                    self._depth -= 1
                return

            conn = self._db
            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def insert_issue(
        self,
        issue_id: str,
        short_id: str,
        title: str,
        labels: list[str],
        metadata: dict[str, Any],
        github_ref: str = "",
    ) -> None:
        now = utcnow()
        self._db.execute(
            """
            INSERT INTO issues
              (id, short_id, title, status, labels, metadata, github_ref,
               version, created_at, updated_at, status_changed_at)
            VALUES (?, ?, ?, 'CREATED', ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                issue_id,
                short_id,
                title,
                canonical_json(labels),
                canonical_json(metadata),
                github_ref,
                now,
                now,
                now,
            ),
        )

    def get_issue(self, issue_ref: str) -> sqlite3.Row | None:
        """Look up an issue by id or short id."""
        return self._db.execute(
            "SELECT * FROM issues WHERE id = ? OR short_id = ?", (issue_ref, issue_ref)
        ).fetchone()

    def list_issues(self, status: str = "") -> list[sqlite3.Row]:
        if status:
            return self._db.execute(
                "SELECT * FROM issues WHERE status = ? ORDER BY created_at", (status,)
            ).fetchall()
        return self._db.execute("SELECT * FROM issues ORDER BY created_at").fetchall()

    def compare_and_set_issue_status(
        self, issue_id: str, expected_version: int, new_status: str
    ) -> int:
        """
        Optimistic-concurrency guard for transitions.

        Returns 1 if the status was written, 0 if the version moved.
        """
        now = utcnow()
        cur = self._db.execute(
            """
            UPDATE issues
               SET status            = ?,
                   version           = version + 1,
                   updated_at        = ?,
                   status_changed_at = ?
             WHERE id      = ?
               AND version = ?
            """,
            (new_status, now, now, issue_id, expected_version),
        )
        return cur.rowcount

    def compare_and_set_issue_metadata(
        self, issue_id: str, expected_version: int, metadata: dict[str, Any]
    ) -> int:
        cur = self._db.execute(
            """
            UPDATE issues
               SET metadata   = ?,
                   version    = version + 1,
                   updated_at = ?
             WHERE id      = ?
               AND version = ?
            """,
            (canonical_json(metadata), utcnow(), issue_id, expected_version),
        )
        return cur.rowcount

    def get_active_issue(self) -> sqlite3.Row | None:
        return self._db.execute("SELECT * FROM issues WHERE is_active = 1").fetchone()

    def set_active_issue(self, issue_id: str, actor: str) -> str | None:
        """
        Make *issue_id* the single active issue.

        Returns the id of the previously active issue (or None). Must be
        called inside ``transaction()``; the partial unique index on
        ``is_active`` rejects a concurrent second holder.
        """
        previous = self.get_active_issue()
        previous_id = previous["id"] if previous else None
        now = utcnow()
        if previous_id and previous_id != issue_id:
            self._db.execute(
                """
                UPDATE issues
                   SET is_active = 0, activated_at = NULL, activated_by = NULL,
                       version = version + 1, updated_at = ?
                 WHERE id = ?
                """,
                (now, previous_id),
            )
        self._db.execute(
            """
            UPDATE issues
               SET is_active = 1, activated_at = ?, activated_by = ?,
                   version = version + 1, updated_at = ?
             WHERE id = ?
            """,
            (now, actor, now, issue_id),
        )
        return previous_id

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def upsert_incident(
        self,
        incident_id: str,
        incident_key: str,
        title: str = "",
        category: str = "",
        severity: str = "P2",
        issue_id: str | None = None,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO incidents (id, incident_key, title, category, severity, issue_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(incident_key) DO UPDATE SET
                title    = excluded.title,
                category = excluded.category,
                severity = excluded.severity,
                issue_id = COALESCE(excluded.issue_id, incidents.issue_id)
            """,
            (incident_id, incident_key, title, category, severity, issue_id, utcnow()),
        )

    def get_incident(self, incident_ref: str) -> sqlite3.Row | None:
        """Look up an incident by id or incident key."""
        return self._db.execute(
            "SELECT * FROM incidents WHERE id = ? OR incident_key = ?",
            (incident_ref, incident_ref),
        ).fetchone()

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def insert_evidence_fact(
        self,
        entity_id: str,
        kind: str,
        payload: dict[str, Any],
        content_hash: str,
        observed_at: str | None = None,
    ) -> bool:
        """
        Insert a fact; returns False if the same fact was already stored.

        A repeated fact keeps its row but moves ``observed_at`` forward, so
        re-observing an old reading makes it the newest of its kind again.
        """
        observed = observed_at or utcnow()
        cur = self._db.execute(
            """
            INSERT INTO evidence_facts (entity_id, kind, payload, content_hash, observed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(entity_id, kind, content_hash) DO NOTHING
            """,
            (entity_id, kind, canonical_json(payload), content_hash, observed),
        )
        if cur.rowcount == 1:
            return True
        self._db.execute(
            """
            UPDATE evidence_facts SET observed_at = ?
             WHERE entity_id = ? AND kind = ? AND content_hash = ? AND observed_at < ?
            """,
            (observed, entity_id, kind, content_hash, observed),
        )
        return False

    def list_evidence_facts(
        self, entity_id: str, kinds: list[str] | None = None
    ) -> list[sqlite3.Row]:
        if kinds:
            placeholders = ", ".join("?" for _ in kinds)
            return self._db.execute(
                f"SELECT * FROM evidence_facts WHERE entity_id = ? AND kind IN ({placeholders}) "  # noqa: S608
                "ORDER BY observed_at, id",
                (entity_id, *kinds),
            ).fetchall()
        return self._db.execute(
            "SELECT * FROM evidence_facts WHERE entity_id = ? ORDER BY observed_at, id", (entity_id,)
        ).fetchall()

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit_event(
        self,
        event_id: str,
        event_hash: str,
        event_type: str,
        payload: dict[str, Any],
        subject_id: str = "",
    ) -> bool:
        """
        Append an event to the audit log with hash chaining.

        Returns False when an event with the same ``event_hash`` is already
        stored (the duplicate is dropped and the chain is untouched).
        """
        payload_str = canonical_json(payload)
        with self.transaction() as conn:
            last = conn.execute(
                "SELECT chain_hash FROM audit_events ORDER BY seq DESC LIMIT 1"
            ).fetchone()
            prev_hash = last["chain_hash"] if last else ""
            digest = chain_digest(prev_hash, event_id, event_type, subject_id, payload_str)
            cur = conn.execute(
                """
                INSERT INTO audit_events
                  (id, event_hash, event_type, subject_id, payload, created_at,
                   prev_hash, chain_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_hash) DO NOTHING
                """,
                (event_id, event_hash, event_type, subject_id, payload_str, utcnow(), prev_hash, digest),
            )
        return cur.rowcount == 1

    def list_audit_events(self, subject_id: str = "", limit: int = 0) -> list[sqlite3.Row]:
        """Audit events in ``seq`` order, optionally for one subject."""
        sql = "SELECT * FROM audit_events"
        params: list[Any] = []
        if subject_id:
            sql += " WHERE subject_id = ?"
            params.append(subject_id)
        sql += " ORDER BY seq"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return self._db.execute(sql, params).fetchall()

    def count_audit_events(self, subject_id: str, event_type: str) -> int:
        row = self._db.execute(
            "SELECT COUNT(*) FROM audit_events WHERE subject_id = ? AND event_type = ?",
            (subject_id, event_type),
        ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def insert_drift_detection(
        self,
        detection_id: str,
        entity_id: str,
        drift_detected: bool,
        drift_types: list[str],
        severity: str,
        evidence: dict[str, Any],
        suggestions: list[dict[str, Any]],
        result_hash: str,
        detected_at: str,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO drift_detections
              (id, entity_id, drift_detected, drift_types, severity, evidence,
               suggestions, result_hash, resolved, detected_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                detection_id,
                entity_id,
                int(drift_detected),
                canonical_json(drift_types),
                severity,
                canonical_json(evidence),
                canonical_json(suggestions),
                result_hash,
                detected_at,
            ),
        )

    def get_drift_detection(self, detection_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT * FROM drift_detections WHERE id = ?", (detection_id,)
        ).fetchone()

    def list_drift_detections(self, entity_id: str, limit: int = 20) -> list[sqlite3.Row]:
        return self._db.execute(
            """
            SELECT * FROM drift_detections
             WHERE entity_id = ?
             ORDER BY detected_at DESC, rowid DESC
             LIMIT ?
            """,
            (entity_id, limit),
        ).fetchall()

    def mark_drift_resolved(self, detection_id: str) -> int:
        """Returns 1 on the first resolution, 0 if already resolved."""
        cur = self._db.execute(
            "UPDATE drift_detections SET resolved = 1 WHERE id = ? AND resolved = 0",
            (detection_id,),
        )
        return cur.rowcount

    def insert_drift_resolution(
        self,
        resolution_id: str,
        detection_id: str,
        suggestion_id: str | None,
        manual_override: bool,
        actions: list[dict[str, Any]],
        outcome: dict[str, Any],
        actor: str,
        resolved_at: str,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO drift_resolutions
              (id, detection_id, suggestion_id, manual_override, actions, outcome,
               actor, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                resolution_id,
                detection_id,
                suggestion_id,
                int(manual_override),
                canonical_json(actions),
                canonical_json(outcome),
                actor,
                resolved_at,
            ),
        )

    def get_drift_resolution(self, detection_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT * FROM drift_resolutions WHERE detection_id = ?", (detection_id,)
        ).fetchone()

    # ------------------------------------------------------------------
    # Remediation runs
    # ------------------------------------------------------------------

    def insert_run(
        self,
        run_id: str,
        run_key: str,
        attempt: int,
        incident_id: str,
        playbook_id: str,
        playbook_version: str,
        status: str,
        lawbook_version: str,
        inputs_hash: str,
        planned: dict[str, Any],
        skip_reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        """
        Insert a run row.

        Raises ``sqlite3.IntegrityError`` when a live run (PLANNED, RUNNING or
        SUCCEEDED) already holds *run_key*.
        """
        now = utcnow()
        self._db.execute(
            """
            INSERT INTO remediation_runs
              (id, run_key, attempt, incident_id, playbook_id, playbook_version,
               status, lawbook_version, inputs_hash, planned, result, skip_reason,
               created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                run_key,
                attempt,
                incident_id,
                playbook_id,
                playbook_version,
                status,
                lawbook_version,
                inputs_hash,
                canonical_json(planned),
                canonical_json(result or {}),
                skip_reason,
                now,
                now,
            ),
        )

    def get_run(self, run_id: str) -> sqlite3.Row | None:
        return self._db.execute("SELECT * FROM remediation_runs WHERE id = ?", (run_id,)).fetchone()

    def get_live_run_by_key(self, run_key: str) -> sqlite3.Row | None:
        return self._db.execute(
            """
            SELECT * FROM remediation_runs
             WHERE run_key = ?
               AND status IN ('PLANNED', 'RUNNING', 'SUCCEEDED')
            """,
            (run_key,),
        ).fetchone()

    def next_attempt(self, run_key: str) -> int:
        row = self._db.execute(
            "SELECT MAX(attempt) AS last FROM remediation_runs WHERE run_key = ?", (run_key,)
        ).fetchone()
        return (row["last"] or 0) + 1

    def count_executed_runs(self, incident_id: str) -> int:
        """Runs that got past planning for an incident (SKIPPED excluded)."""
        row = self._db.execute(
            """
            SELECT COUNT(*) AS n FROM remediation_runs
             WHERE incident_id = ? AND status != 'SKIPPED'
            """,
            (incident_id,),
        ).fetchone()
        return int(row["n"])

    def last_executed_run(self, incident_id: str, playbook_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            """
            SELECT * FROM remediation_runs
             WHERE incident_id = ? AND playbook_id = ? AND status != 'SKIPPED'
             ORDER BY created_at DESC, rowid DESC
             LIMIT 1
            """,
            (incident_id, playbook_id),
        ).fetchone()

    def list_runs(self, incident_id: str = "", limit: int = 50) -> list[sqlite3.Row]:
        if incident_id:
            return self._db.execute(
                """
                SELECT * FROM remediation_runs
                 WHERE incident_id = ?
                 ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (incident_id, limit),
            ).fetchall()
        return self._db.execute(
            "SELECT * FROM remediation_runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()

    def advance_run(
        self,
        run_id: str,
        new_status: str,
        from_statuses: tuple[str, ...],
        result: dict[str, Any] | None = None,
    ) -> int:
        """Move a run forward only from one of *from_statuses*; returns rowcount."""
        placeholders = ", ".join("?" for _ in from_statuses)
        sets = "status = ?, updated_at = ?"
        params: list[Any] = [new_status, utcnow()]
        if result is not None:
            sets += ", result = ?"
            params.append(canonical_json(result))
        params.extend([run_id, *from_statuses])
        cur = self._db.execute(
            f"UPDATE remediation_runs SET {sets} WHERE id = ? AND status IN ({placeholders})",  # noqa: S608
            params,
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Remediation steps
    # ------------------------------------------------------------------

    def insert_step(
        self,
        step_row_id: str,
        run_id: str,
        step_id: str,
        position: int,
        action_type: str,
        idempotency_key: str,
        best_effort: bool,
        step_input: dict[str, Any],
    ) -> None:
        self._db.execute(
            """
            INSERT INTO remediation_steps
              (id, run_id, step_id, position, action_type, status,
               idempotency_key, best_effort, input)
            VALUES (?, ?, ?, ?, ?, 'PLANNED', ?, ?, ?)
            """,
            (
                step_row_id,
                run_id,
                step_id,
                position,
                action_type,
                idempotency_key,
                int(best_effort),
                canonical_json(step_input),
            ),
        )

    def list_steps(self, run_id: str) -> list[sqlite3.Row]:
        return self._db.execute(
            "SELECT * FROM remediation_steps WHERE run_id = ? ORDER BY position", (run_id,)
        ).fetchall()

    def get_step(self, step_row_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT * FROM remediation_steps WHERE id = ?", (step_row_id,)
        ).fetchone()

    def find_succeeded_step(self, idempotency_key: str) -> sqlite3.Row | None:
        """A step with this key that already succeeded in any attempt."""
        return self._db.execute(
            """
            SELECT * FROM remediation_steps
             WHERE idempotency_key = ? AND status = 'SUCCEEDED'
             ORDER BY finished_at LIMIT 1
            """,
            (idempotency_key,),
        ).fetchone()

    def advance_step(
        self,
        step_row_id: str,
        new_status: str,
        from_statuses: tuple[str, ...],
        *,
        output: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> int:
        """
        Move a step forward only from one of *from_statuses*.

        Steps never regress: the WHERE clause carries the allowed
        predecessors, so a stale writer updates nothing.
        """
        now = utcnow()
        sets = ["status = ?"]
        params: list[Any] = [new_status]
        if new_status == "RUNNING":
            sets.append("started_at = ?")
            params.append(now)
        else:
            sets.append("finished_at = ?")
            params.append(now)
        if output is not None:
            sets.append("output = ?")
            params.append(canonical_json(output))
        if error is not None:
            sets.append("error = ?")
            params.append(canonical_json(error))
        placeholders = ", ".join("?" for _ in from_statuses)
        params.extend([step_row_id, *from_statuses])
        cur = self._db.execute(
            f"UPDATE remediation_steps SET {', '.join(sets)} "  # noqa: S608
            f"WHERE id = ? AND status IN ({placeholders})",
            params,
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # External actions
    # ------------------------------------------------------------------

    def get_external_action(self, idempotency_key: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT * FROM external_actions WHERE idempotency_key = ?", (idempotency_key,)
        ).fetchone()

    def record_external_action(
        self, idempotency_key: str, action_type: str, target: str, result: dict[str, Any]
    ) -> bool:
        cur = self._db.execute(
            """
            INSERT INTO external_actions (idempotency_key, action_type, target, result, applied_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING
            """,
            (idempotency_key, action_type, target, canonical_json(result), utcnow()),
        )
        return cur.rowcount == 1
