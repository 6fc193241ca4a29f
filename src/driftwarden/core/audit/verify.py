"""
Audit hash chain verification: verify integrity of the SQLite audit log.

Each event stores ``prev_hash`` (the chain hash of the preceding event by
``seq``), its own ``chain_hash`` and a content ``event_hash``. Verification
checks:

1. Each event's event_hash matches recomputation from type, subject and payload
2. Each event's chain_hash matches recomputation from its fields
3. Each event's prev_hash matches the previous event's chain_hash

Usage::

    result = verify_audit_chain(db)
    result = verify_audit_chain(db, subject_id="run-abc123")
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from driftwarden.core.audit.writer import event_hash
from driftwarden.core.store.database import Database, chain_digest


@dataclass
class AuditVerifyResult:
    """Result of audit hash chain verification."""

    valid: bool
    total_events: int
    verified_events: int = 0
    errors: list[str] = field(default_factory=list)
    first_break_event_id: str | None = None
    first_break_position: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "total_events": self.total_events,
            "verified_events": self.verified_events,
            "errors": list(self.errors),
            "first_break_event_id": self.first_break_event_id,
            "first_break_position": self.first_break_position,
        }


def _record_break(result: AuditVerifyResult, position: int, event_id: str, message: str) -> None:
    result.valid = False
    result.errors.append(message)
    if result.first_break_event_id is None:
        result.first_break_event_id = event_id
        result.first_break_position = position


def verify_audit_chain(
    db: Database,
    subject_id: str | None = None,
) -> AuditVerifyResult:
    """
    Verify the hash chain integrity of the audit log.

    If subject_id is provided, only events for that subject are checked and
    the prev_hash linkage (which spans subjects) is skipped.
    """
    rows = db.list_audit_events(subject_id=subject_id or "")

    total = len(rows)
    result = AuditVerifyResult(valid=True, total_events=total)

    if total == 0:
        return result

    prev_hash = ""
    for i, row in enumerate(rows):
        event_id = row["id"]
        event_type = row["event_type"]
        subject = row["subject_id"] or ""
        payload_str = row["payload"] or ""
        stored_prev_hash = row["prev_hash"] or ""
        stored_chain_hash = row["chain_hash"] or ""

        # Check 1: prev_hash linkage
        if subject_id is None and stored_prev_hash != prev_hash:
            _record_break(
                result,
                i,
                event_id,
                f"Event #{i} ({event_id}): prev_hash mismatch: "
                f"expected {prev_hash[:16]}..., got {stored_prev_hash[:16]}...",
            )

        # Check 2: chain hash recomputation
        expected_chain = chain_digest(stored_prev_hash, event_id, event_type, subject, payload_str)
        if stored_chain_hash != expected_chain:
            _record_break(
                result,
                i,
                event_id,
                f"Event #{i} ({event_id}): chain_hash mismatch: "
                f"stored {stored_chain_hash[:16]}..., computed {expected_chain[:16]}...",
            )

        # Check 3: content hash recomputation
        try:
            payload = json.loads(payload_str) if payload_str else {}
        except json.JSONDecodeError:
            _record_break(result, i, event_id, f"Event #{i} ({event_id}): payload is not JSON")
        else:
            if row["event_hash"] != event_hash(event_type, subject, payload):
                _record_break(
                    result,
                    i,
                    event_id,
                    f"Event #{i} ({event_id}): event_hash does not match payload",
                )

        prev_hash = stored_chain_hash
        result.verified_events = i + 1

    return result


def format_verify_result(result: AuditVerifyResult, subject_id: str | None = None) -> str:
    """Format an AuditVerifyResult as human-readable text."""
    lines: list[str] = []

    scope = f"subject {subject_id}" if subject_id else "full chain"
    lines.append(f"Audit Chain Verification ({scope})")
    lines.append(f"Total events:    {result.total_events}")
    lines.append(f"Verified:        {result.verified_events}")

    if result.valid:
        lines.append("Integrity:       VALID")
    else:
        lines.append(f"Integrity:       BROKEN ({len(result.errors)} error(s))")
        if result.first_break_event_id:
            lines.append(
                f"First break:     event #{result.first_break_position} "
                f"({result.first_break_event_id})"
            )
        for error in result.errors[:10]:
            lines.append(f"  - {error}")
        if len(result.errors) > 10:
            lines.append(f"  ... and {len(result.errors) - 10} more")

    return "\n".join(lines)
