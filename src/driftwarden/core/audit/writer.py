"""
Audit event writer.

Structured audit events written to the SQLite audit log.
All events use consistent field names for grep/jq searchability.

Event types:
  issue_created               new issue stored in CREATED
  issue_transitioned          status moved along a valid edge
  issue_transition_blocked    transition rejected with blocking reasons
  issue_annotated             metadata-only update (allowed when terminal)
  issue_activated             single-active-issue holder changed
  evidence_recorded           new evidence fact ingested
  drift_detected              a drift detection run was persisted
  drift_resolved              a detection was resolved (suggestion or override)
  run_planned                 remediation run and its steps planned
  run_skipped                 run denied by a gate, evidence, or replayed
  run_started                 run moved PLANNED → RUNNING
  step_started                step moved PLANNED → RUNNING
  step_finished               step reached SUCCEEDED, FAILED or SKIPPED
  run_finished                run reached SUCCEEDED or FAILED

Deduplication:
  ``event_hash`` is the content hash of ``{event_type, subject_id, payload}``
  (no timestamps, no event id). Re-delivering the same event is a no-op.
  Events that can legitimately recur carry a discriminator in their payload
  (the issue version for ``issue_activated``, the start count for
  ``run_started``).

Hash chain:
  Each event includes prev_hash (the chain hash of the previous event) and
  its own chain_hash, forming an append-only chain. Truncation is detectable.
"""

from __future__ import annotations

import json
import re
import secrets
from typing import Any

import structlog

from driftwarden.core.hashing import content_hash
from driftwarden.core.store.database import Database

logger = structlog.get_logger()

_MAX_ERROR_CHARS = 500

# Secret patterns redacted from free-text fields before they are stored
_AUDIT_SECRET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ghp_[A-Za-z0-9]{36,}"),  # GitHub PAT
    re.compile(r"github_pat_[A-Za-z0-9_]{40,}"),  # GitHub fine-grained PAT
    re.compile(r"gh[osu]_[A-Za-z0-9]{36,}"),  # GitHub OAuth / app tokens
    re.compile(r"xoxb-[A-Za-z0-9\-]{20,}"),  # Slack bot token
    re.compile(r"AKIA[A-Z0-9]{16}"),  # AWS access key ID
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]{16,}"),  # Authorization header
]


def redact(text: str, limit: int = _MAX_ERROR_CHARS) -> str:
    """Strip known secret shapes from *text* and truncate it."""
    redacted = text
    for pattern in _AUDIT_SECRET_PATTERNS:
        redacted = pattern.sub("[REDACTED]", redacted)
    return redacted[:limit]


def event_hash(event_type: str, subject_id: str, payload: dict[str, Any]) -> str:
    """Deduplication hash of an audit event (generation metadata excluded)."""
    return content_hash({"event_type": event_type, "subject_id": subject_id, "payload": payload})


class AuditWriter:
    """
    Writes structured audit events to the database.

    Usage::

        writer = AuditWriter(db)
        writer.issue_created(issue.id, issue.title)
        writer.issue_transitioned(issue.id, "CREATED", "SPEC_READY", version=2, actor="ops")

    Every method returns True if the event was stored and False if it was a
    duplicate of an event already in the log.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def _write(self, event_type: str, payload: dict[str, Any], subject_id: str = "") -> bool:
        stored = self._db.append_audit_event(
            event_id=secrets.token_hex(12),
            event_hash=event_hash(event_type, subject_id, payload),
            event_type=event_type,
            payload=payload,
            subject_id=subject_id,
        )
        if not stored:
            logger.debug("audit_event_duplicate", event_type=event_type, subject_id=subject_id)
        return stored

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def issue_created(self, issue_id: str, title: str, labels: list[str] | None = None) -> bool:
        return self._write(
            "issue_created",
            {"title": title, "labels": sorted(labels or []), "status": "CREATED"},
            subject_id=issue_id,
        )

    def issue_transitioned(
        self,
        issue_id: str,
        from_state: str,
        to_state: str,
        *,
        version: int,
        actor: str,
        reason: str = "",
        transition_type: str = "",
        idempotency_key: str = "",
    ) -> bool:
        return self._write(
            "issue_transitioned",
            {
                "from": from_state,
                "to": to_state,
                "version": version,
                "actor": actor,
                "reason": reason,
                "transition_type": transition_type,
                "idempotency_key": idempotency_key,
            },
            subject_id=issue_id,
        )

    def issue_transition_blocked(
        self,
        issue_id: str,
        from_state: str,
        to_state: str,
        *,
        code: str,
        reasons: list[dict[str, Any]],
        version: int,
        actor: str,
        idempotency_key: str = "",
    ) -> bool:
        return self._write(
            "issue_transition_blocked",
            {
                "from": from_state,
                "to": to_state,
                "code": code,
                "reasons": reasons,
                "version": version,
                "actor": actor,
                "idempotency_key": idempotency_key,
            },
            subject_id=issue_id,
        )

    def issue_annotated(
        self, issue_id: str, keys: list[str], *, version: int, actor: str
    ) -> bool:
        return self._write(
            "issue_annotated",
            {"keys": sorted(keys), "version": version, "actor": actor},
            subject_id=issue_id,
        )

    def issue_activated(
        self, issue_id: str, previous_id: str | None, actor: str, version: int
    ) -> bool:
        return self._write(
            "issue_activated",
            {"previous_active": previous_id, "actor": actor, "version": version},
            subject_id=issue_id,
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def evidence_recorded(self, entity_id: str, kind: str, fact_hash: str) -> bool:
        return self._write(
            "evidence_recorded",
            {"kind": kind, "content_hash": fact_hash},
            subject_id=entity_id,
        )

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def drift_detected(
        self,
        entity_id: str,
        detection_id: str,
        *,
        drift_detected: bool,
        drift_types: list[str],
        severity: str,
        suggestion_count: int,
    ) -> bool:
        return self._write(
            "drift_detected",
            {
                "detection_id": detection_id,
                "drift_detected": drift_detected,
                "drift_types": drift_types,
                "severity": severity,
                "suggestion_count": suggestion_count,
            },
            subject_id=entity_id,
        )

    def drift_resolved(
        self,
        entity_id: str,
        detection_id: str,
        *,
        suggestion_id: str | None,
        manual_override: bool,
        actor: str,
        applied: list[dict[str, Any]],
    ) -> bool:
        return self._write(
            "drift_resolved",
            {
                "detection_id": detection_id,
                "suggestion_id": suggestion_id,
                "manual_override": manual_override,
                "actor": actor,
                "applied": applied,
            },
            subject_id=entity_id,
        )

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def run_planned(
        self,
        run_id: str,
        *,
        run_key: str,
        attempt: int,
        incident_id: str,
        playbook_id: str,
        lawbook_version: str,
        step_ids: list[str],
    ) -> bool:
        return self._write(
            "run_planned",
            {
                "run_key": run_key,
                "attempt": attempt,
                "incident_id": incident_id,
                "playbook_id": playbook_id,
                "lawbook_version": lawbook_version,
                "steps": step_ids,
            },
            subject_id=run_id,
        )

    def run_skipped(
        self,
        run_id: str,
        *,
        run_key: str,
        skip_reason: str,
        reasons: list[dict[str, Any]] | None = None,
        replay_of: str | None = None,
    ) -> bool:
        return self._write(
            "run_skipped",
            {
                "run_key": run_key,
                "skip_reason": skip_reason,
                "reasons": reasons or [],
                "replay_of": replay_of,
            },
            subject_id=run_id,
        )

    def run_started(self, run_id: str, run_key: str, resumed: bool = False, start: int = 1) -> bool:
        return self._write(
            "run_started",
            {"run_key": run_key, "resumed": resumed, "start": start},
            subject_id=run_id,
        )

    def step_started(self, run_id: str, step_id: str, idempotency_key: str) -> bool:
        return self._write(
            "step_started",
            {"step_id": step_id, "idempotency_key": idempotency_key},
            subject_id=run_id,
        )

    def step_finished(
        self,
        run_id: str,
        step_id: str,
        status: str,
        *,
        error_code: str = "",
        error_message: str = "",
        skip_reason: str = "",
        attempts: int = 0,
    ) -> bool:
        payload: dict[str, Any] = {"step_id": step_id, "status": status, "attempts": attempts}
        if error_code:
            payload["error_code"] = error_code
            payload["error_message"] = redact(error_message)
        if skip_reason:
            payload["skip_reason"] = skip_reason
        return self._write("step_finished", payload, subject_id=run_id)

    def run_finished(
        self,
        run_id: str,
        status: str,
        *,
        run_key: str,
        failed_step: str | None = None,
        summary: dict[str, int] | None = None,
    ) -> bool:
        return self._write(
            "run_finished",
            {
                "run_key": run_key,
                "status": status,
                "failed_step": failed_step,
                "summary": summary or {},
            },
            subject_id=run_id,
        )


def list_events(db: Database, subject_id: str = "", limit: int = 0) -> list[dict[str, Any]]:
    """Audit events as dicts, ordered by ``seq``."""
    return [
        {
            "seq": row["seq"],
            "id": row["id"],
            "event_type": row["event_type"],
            "subject_id": row["subject_id"],
            "payload": json.loads(row["payload"] or "{}"),
            "created_at": row["created_at"],
            "prev_hash": row["prev_hash"],
            "chain_hash": row["chain_hash"],
        }
        for row in db.list_audit_events(subject_id=subject_id, limit=limit)
    ]
