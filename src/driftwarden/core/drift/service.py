"""
DriftService: runs detection against a mirror and applies confirmed repairs.

``detect`` reads only: it fetches the external snapshot, compares, then
stores the result together with its ``drift_detected`` audit event.

``resolve`` is the only path that writes to GitHub or moves an issue. It
needs an explicit ``confirmation=True``. Internal actions go through the
LifecycleEngine so every transition guard still applies; external actions
go through the mirror under a key derived from the detection, the action
index and the action itself. A resolve that fails half-way leaves the
detection open, and retrying it replays the already-applied actions
instead of repeating them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog

from driftwarden.core.audit.writer import AuditWriter
from driftwarden.core.drift.detector import detect_drift
from driftwarden.core.drift.models import DriftDetectionResult, DriftResolution, RepairAction, RepairKind
from driftwarden.core.evidence.models import EvidenceFact
from driftwarden.core.evidence.reader import EvidenceReader, SqliteEvidenceStore
from driftwarden.core.exceptions import (
    ConfirmationRequiredError,
    EvidenceUnavailableError,
    NotFoundError,
    ResolutionConflictError,
    ValidationError,
)
from driftwarden.core.hashing import content_hash
from driftwarden.core.lifecycle.engine import LifecycleEngine
from driftwarden.core.lifecycle.models import Issue
from driftwarden.core.mirror.models import ExternalAction, MirrorClient
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


def resolution_action_key(detection_id: str, index: int, action: RepairAction) -> str:
    digest = content_hash({"detection_id": detection_id, "index": index, "action": action})
    return f"drift:{digest[:32]}"


def mirror_ref(issue: Issue) -> str:
    """The ref the mirror knows the issue by."""
    return issue.github_ref or issue.id


class DriftService:
    def __init__(
        self,
        db: Database,
        mirror: MirrorClient,
        engine: LifecycleEngine,
        *,
        reader: EvidenceReader | None = None,
    ) -> None:
        self._db = db
        self._mirror = mirror
        self._engine = engine
        self._reader = reader or EvidenceReader(SqliteEvidenceStore(db))
        self._audit = AuditWriter(db)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect(self, entity_ref: str) -> DriftDetectionResult:
        """Compare one issue with GitHub and persist exactly one result."""
        issue = self._engine.get_issue(entity_ref)
        log = logger.bind(issue_id=issue.id, github_ref=issue.github_ref)

        snapshot = await self._mirror.fetch_external_state(mirror_ref(issue))
        facts: tuple[EvidenceFact, ...] = ()
        evidence_unavailable = False
        try:
            facts = (await self._reader.read(issue.id)).facts
        except EvidenceUnavailableError:
            # Corroboration only raises confidence; detection goes on without it
            evidence_unavailable = True
            log.warning("drift_corroboration_unavailable")

        result = detect_drift(
            issue,
            snapshot,
            facts,
            detection_id=str(uuid.uuid4()),
            detected_at=datetime.now(UTC),
            table=self._engine.table,
        )
        if evidence_unavailable:
            result.evidence["evidence_unavailable"] = True

        with self._db.transaction():
            self._db.insert_drift_detection(
                result.id,
                issue.id,
                result.drift_detected,
                [t.value for t in result.drift_types],
                result.severity.value,
                result.evidence,
                [s.model_dump(mode="json") for s in result.suggestions],
                content_hash(result.hashable()),
                result.detected_at.isoformat(),
            )
            self._audit.drift_detected(
                issue.id,
                result.id,
                drift_detected=result.drift_detected,
                drift_types=[t.value for t in result.drift_types],
                severity=result.severity.value,
                suggestion_count=len(result.suggestions),
            )

        log.info(
            "drift_detected" if result.drift_detected else "drift_clean",
            detection_id=result.id,
            drift_types=[t.value for t in result.drift_types],
            severity=result.severity.value,
            unknown_fields=snapshot.unknown_fields,
        )
        return result

    def get_detection(self, detection_id: str) -> DriftDetectionResult:
        row = self._db.get_drift_detection(detection_id)
        if row is None:
            raise NotFoundError(f"Drift detection not found: {detection_id}")
        res_row = self._db.get_drift_resolution(detection_id)
        return DriftDetectionResult.from_row(
            row, DriftResolution.from_row(res_row) if res_row else None
        )

    def list_detections(self, entity_ref: str, limit: int = 20) -> list[DriftDetectionResult]:
        issue = self._engine.get_issue(entity_ref)
        return [
            DriftDetectionResult.from_row(r)
            for r in self._db.list_drift_detections(issue.id, limit)
        ]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        detection_id: str,
        suggestion_id: str | None = None,
        manual_actions: list[RepairAction | dict[str, Any]] | None = None,
        *,
        confirmation: bool = False,
        actor: str = "system",
    ) -> DriftResolution:
        """
        Apply one suggestion (or a manual override) and record the resolution.

        Raises:
            ConfirmationRequiredError: ``confirmation`` is not True.
            NotFoundError: unknown detection or suggestion.
            ResolutionConflictError: the detection was already resolved.
            ValidationError: neither or both of suggestion and override given.
        """
        if confirmation is not True:
            raise ConfirmationRequiredError(
                "Drift resolution changes state; pass confirmation=true to proceed"
            )
        if (suggestion_id is None) == (manual_actions is None):
            raise ValidationError("Provide exactly one of suggestion_id or manual actions")

        detection = self.get_detection(detection_id)
        if detection.resolved:
            raise ResolutionConflictError(f"Detection {detection_id} is already resolved")

        if suggestion_id is not None:
            suggestion = detection.suggestion(suggestion_id)
            if suggestion is None:
                raise NotFoundError(f"Suggestion {suggestion_id} not found in detection {detection_id}")
            actions = list(suggestion.actions)
            manual_override = False
        else:
            actions = [RepairAction.model_validate(a) for a in manual_actions or []]
            manual_override = True

        issue = self._engine.get_issue(detection.entity_id)
        log = logger.bind(detection_id=detection_id, issue_id=issue.id, actor=actor)
        applied: list[dict[str, Any]] = []

        for index, action in enumerate(actions):
            key = resolution_action_key(detection_id, index, action)
            if action.kind == RepairKind.ANNOTATE:
                applied.append(self._annotate(issue.id, action, key, actor))
            elif action.kind.is_internal:
                to_state = action.params.get("to_state")
                if not to_state:
                    raise ValidationError(f"{action.kind.value} needs a to_state parameter")
                outcome = await self._engine.apply_transition(
                    issue.id,
                    to_state,
                    reason=f"drift resolution {detection_id}",
                    actor=actor,
                    idempotency_key=key,
                )
                applied.append(
                    {
                        "kind": action.kind.value,
                        "idempotency_key": key,
                        "to_state": outcome.to_state.value,
                        "applied": not outcome.replayed,
                    }
                )
            else:
                result = await self._mirror.apply_external_action(
                    ExternalAction(action.kind.value, mirror_ref(issue), dict(action.params)),
                    key,
                )
                applied.append({"kind": action.kind.value, **result.to_dict()})
            log.info("drift_action_applied", kind=action.kind.value, idempotency_key=key)

        resolution = DriftResolution(
            id=str(uuid.uuid4()),
            detection_id=detection_id,
            suggestion_id=suggestion_id,
            manual_override=manual_override,
            actions=actions,
            outcome={"applied": applied},
            actor=actor,
            resolved_at=datetime.now(UTC),
        )
        with self._db.transaction():
            if self._db.mark_drift_resolved(detection_id) == 0:
                raise ResolutionConflictError(f"Detection {detection_id} is already resolved")
            self._db.insert_drift_resolution(
                resolution.id,
                detection_id,
                suggestion_id,
                manual_override,
                [a.model_dump(mode="json") for a in actions],
                resolution.outcome,
                actor,
                resolution.resolved_at.isoformat(),
            )
            self._audit.drift_resolved(
                issue.id,
                detection_id,
                suggestion_id=suggestion_id,
                manual_override=manual_override,
                actor=actor,
                applied=applied,
            )

        log.info("drift_resolved", suggestion_id=suggestion_id, manual_override=manual_override)
        return resolution

    def _annotate(self, issue_id: str, action: RepairAction, key: str, actor: str) -> dict[str, Any]:
        metadata = action.params.get("metadata")
        if not isinstance(metadata, dict) or not metadata:
            raise ValidationError(f"{action.kind.value} needs a non-empty metadata parameter")
        current = self._engine.get_issue(issue_id).metadata
        changed = any(current.get(k) != v for k, v in metadata.items())
        if changed:
            self._engine.annotate(issue_id, metadata, actor=actor)
        return {
            "kind": action.kind.value,
            "idempotency_key": key,
            "keys": sorted(metadata),
            "applied": changed,
        }
