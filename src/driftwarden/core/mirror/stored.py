"""
Offline mirror backed by stored evidence.

Reads the newest ``github_snapshot`` fact recorded under an entity ref
(``owner/repo#N``, or the issue id for issues not linked to GitHub) and
turns it into an ``ExternalSnapshot``. Used by the HTTP surface and whenever no
GitHub token is configured, so detection stays read-only and works without
network access. It cannot apply anything.
"""

from __future__ import annotations

import structlog

from driftwarden.core.evidence.models import EvidenceFact
from driftwarden.core.exceptions import ExternalActionError
from driftwarden.core.mirror.models import SNAPSHOT_FIELDS, ActionResult, ExternalAction, ExternalSnapshot
from driftwarden.core.store.database import Database

logger = structlog.get_logger()

SNAPSHOT_KIND = "github_snapshot"


class StoredSnapshotMirror:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def fetch_external_state(self, entity_ref: str) -> ExternalSnapshot:
        rows = self._db.list_evidence_facts(entity_ref, [SNAPSHOT_KIND])
        if not rows:
            logger.info("stored_snapshot_missing", entity_ref=entity_ref)
            snapshot = ExternalSnapshot(entity_ref=entity_ref)
            snapshot.mark_unknown(*SNAPSHOT_FIELDS)
            return snapshot
        latest = EvidenceFact.from_row(rows[-1])  # newest observation last
        data = {"entity_ref": entity_ref, **latest.payload}
        if "fetched_at" not in data and latest.observed_at:
            data["fetched_at"] = latest.observed_at
        return ExternalSnapshot.from_dict(data)

    async def apply_external_action(
        self, action: ExternalAction, idempotency_key: str
    ) -> ActionResult:
        raise ExternalActionError(
            f"No GitHub connection configured; cannot apply {action.action_type}",
            transient=False,
        )
