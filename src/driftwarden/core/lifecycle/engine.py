"""
LifecycleEngine: applies issue transitions safely.

Every transition request follows the same sequence:

  1. Re-read the issue (never trust the caller's copy).
  2. Re-fetch evidence through the EvidenceReader; a timeout is a blocking
     reason, never a pass.
  3. Re-validate the edge, its evidence predicates and its guardrails.
  4. In one transaction: compare-and-set ``status`` on ``version`` and append
     the ``issue_transitioned`` audit event.

A lost compare-and-set raises ``ConcurrentModificationError`` and leaves
nothing behind. The engine never picks a target state on its own.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

import structlog

from driftwarden.core.audit.writer import AuditWriter
from driftwarden.core.evidence.models import BlockingReason, EvidenceFact, EvidenceSnapshot
from driftwarden.core.evidence.reader import EvidenceReader, SqliteEvidenceStore
from driftwarden.core.exceptions import (
    BlockedTransitionError,
    ConcurrentModificationError,
    EvidenceUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from driftwarden.core.hashing import canonicalize, content_hash, short_id
from driftwarden.core.lifecycle.models import (
    Issue,
    IssueState,
    TransitionCheck,
    TransitionOutcome,
)
from driftwarden.core.lifecycle.transitions import BUILTIN_TABLE, TransitionTable, check_transition
from driftwarden.core.policy.gates import check_key_format
from driftwarden.core.policy.parser import LawbookProvider
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


def _parse_state(value: IssueState | str) -> IssueState:
    try:
        return IssueState(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown issue state {value!r}") from exc


def default_transition_key(issue_id: str, from_state: IssueState, to_state: IssueState, version: int) -> str:
    digest = content_hash(
        {"issue_id": issue_id, "from": from_state, "to": to_state, "version": version}
    )
    return f"transition:{digest[:32]}"


class LifecycleEngine:
    """Issue creation, transitions, annotations and activation."""

    def __init__(
        self,
        db: Database,
        *,
        reader: EvidenceReader | None = None,
        lawbooks: LawbookProvider | None = None,
        table: TransitionTable = BUILTIN_TABLE,
    ) -> None:
        self._db = db
        self._reader = reader or EvidenceReader(SqliteEvidenceStore(db))
        self._lawbooks = lawbooks or LawbookProvider()
        self._table = table
        self._audit = AuditWriter(db)

    @property
    def table(self) -> TransitionTable:
        return self._table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_issue(self, issue_ref: str) -> Issue:
        row = self._db.get_issue(issue_ref)
        if row is None:
            raise NotFoundError(f"Issue not found: {issue_ref}")
        return Issue.from_row(row)

    def valid_transitions(self, state: IssueState | str) -> list[IssueState]:
        return self._table.valid_transitions(_parse_state(state))

    def can_transition(
        self,
        state: IssueState | str,
        to_state: IssueState | str,
        evidence: EvidenceSnapshot | list[EvidenceFact],
    ) -> TransitionCheck:
        """Pure check against an evidence snapshot the caller already holds."""
        facts = evidence.facts if isinstance(evidence, EvidenceSnapshot) else evidence
        return check_transition(
            _parse_state(state),
            _parse_state(to_state),
            facts,
            self._lawbooks.get_active_policy(),
            self._table,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_issue(
        self,
        title: str,
        *,
        labels: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        github_ref: str = "",
        actor: str = "system",
    ) -> Issue:
        if not title.strip():
            raise ValidationError("Issue title must not be empty")
        metadata = dict(metadata or {})
        canonicalize(metadata)  # rejects values the audit log cannot hash

        issue_id = str(uuid.uuid4())
        sid = short_id(content_hash({"issue_id": issue_id}))
        with self._db.transaction():
            self._db.insert_issue(
                issue_id, sid, title.strip(), sorted(set(labels or [])), metadata, github_ref
            )
            self._audit.issue_created(issue_id, title.strip(), labels)
        logger.info("issue_created", issue_id=issue_id, short_id=sid, actor=actor)
        return self.get_issue(issue_id)

    async def apply_transition(
        self,
        issue_id: str,
        to_state: IssueState | str,
        reason: str = "",
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> TransitionOutcome:
        """
        Move an issue to *to_state*.

        Raises:
            NotFoundError: unknown issue.
            InvalidTransitionError: the edge does not exist.
            BlockedTransitionError: evidence or guardrails are unmet, or the
                evidence store is unavailable.
            ConcurrentModificationError: another writer moved the issue first.
        """
        target = _parse_state(to_state)
        if idempotency_key is not None:
            bad_key = check_key_format(idempotency_key)
            if bad_key is not None:
                raise ValidationError(bad_key.description, reasons=[bad_key])

        issue = self.get_issue(issue_id)
        log = logger.bind(issue_id=issue.id, from_state=issue.status.value, to_state=target.value)

        if idempotency_key is not None:
            replay = self._find_replay(issue, idempotency_key)
            if replay is not None:
                log.info("transition_replayed", idempotency_key=idempotency_key)
                return replay

        key = idempotency_key or default_transition_key(issue.id, issue.status, target, issue.version)
        definition = self._table.get(issue.status, target)
        if definition is None:
            check = check_transition(issue.status, target, [], None, self._table)
            self._record_blocked(issue, target, InvalidTransitionError.code, check.blocking_reasons, actor, key)
            log.info("transition_invalid")
            raise InvalidTransitionError(
                f"No transition from {issue.status.value} to {target.value}",
                reasons=check.blocking_reasons,
            )

        facts: tuple[EvidenceFact, ...] = ()
        if definition.required_evidence or definition.guardrail_refs:
            # Guardrails may reference any kind, so they widen the read
            kinds = None if definition.guardrail_refs else definition.evidence_kinds
            try:
                facts = (await self._reader.read(issue.id, kinds)).facts
            except EvidenceUnavailableError as exc:
                reasons: list[BlockingReason] = list(exc.reasons)
                self._record_blocked(issue, target, BlockedTransitionError.code, reasons, actor, key)
                log.warning("transition_blocked_evidence_unavailable")
                raise BlockedTransitionError(str(exc), reasons=reasons) from exc

        check = check_transition(
            issue.status, target, facts, self._lawbooks.get_active_policy(), self._table
        )
        if not check.allowed:
            self._record_blocked(issue, target, BlockedTransitionError.code, check.blocking_reasons, actor, key)
            log.info("transition_blocked", reasons=[r.type for r in check.blocking_reasons])
            raise BlockedTransitionError(
                f"Transition {issue.status.value} → {target.value} is blocked",
                reasons=check.blocking_reasons,
            )

        with self._db.transaction():
            won = self._db.compare_and_set_issue_status(issue.id, issue.version, target.value)
            if not won:
                raise ConcurrentModificationError(
                    f"Issue {issue.id} changed since version {issue.version}; refetch and retry"
                )
            self._audit.issue_transitioned(
                issue.id,
                issue.status.value,
                target.value,
                version=issue.version + 1,
                actor=actor,
                reason=reason,
                transition_type=definition.transition_type.value,
                idempotency_key=key,
            )

        log.info("issue_transitioned", version=issue.version + 1, actor=actor)
        return TransitionOutcome(
            issue=self.get_issue(issue.id),
            from_state=issue.status,
            to_state=target,
            idempotency_key=key,
            transition_type=definition.transition_type,
        )

    def annotate(self, issue_id: str, metadata: dict[str, Any], actor: str = "system") -> Issue:
        """Merge *metadata* into the issue. Allowed in every state, including terminal ones."""
        if not isinstance(metadata, dict) or not metadata:
            raise ValidationError("metadata must be a non-empty mapping")
        canonicalize(metadata)

        issue = self.get_issue(issue_id)
        merged = {**issue.metadata, **metadata}
        with self._db.transaction():
            won = self._db.compare_and_set_issue_metadata(issue.id, issue.version, merged)
            if not won:
                raise ConcurrentModificationError(
                    f"Issue {issue.id} changed since version {issue.version}; refetch and retry"
                )
            self._audit.issue_annotated(
                issue.id, list(metadata), version=issue.version + 1, actor=actor
            )
        logger.info("issue_annotated", issue_id=issue.id, keys=sorted(metadata))
        return self.get_issue(issue.id)

    def activate(self, issue_id: str, actor: str = "system") -> Issue:
        """Make *issue_id* the single active issue, clearing the previous holder."""
        issue = self.get_issue(issue_id)
        if issue.status.is_terminal:
            raise ValidationError(f"Issue {issue.id} is {issue.status.value}; terminal issues cannot be activated")
        if issue.is_active:
            return issue
        try:
            with self._db.transaction():
                previous = self._db.set_active_issue(issue.id, actor)
                version = self._db.get_issue(issue.id)["version"]
                self._audit.issue_activated(issue.id, previous, actor, version)
        except sqlite3.IntegrityError as exc:
            raise ConcurrentModificationError(
                "Another issue was activated concurrently; refetch and retry"
            ) from exc
        logger.info("issue_activated", issue_id=issue.id, previous=previous, actor=actor)
        return self.get_issue(issue.id)

    def get_active_issue(self) -> Issue | None:
        row = self._db.get_active_issue()
        return Issue.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_blocked(
        self,
        issue: Issue,
        target: IssueState,
        code: str,
        reasons: list[BlockingReason],
        actor: str,
        key: str,
    ) -> None:
        self._audit.issue_transition_blocked(
            issue.id,
            issue.status.value,
            target.value,
            code=code,
            reasons=[r.to_dict() for r in reasons],
            version=issue.version,
            actor=actor,
            idempotency_key=key,
        )

    def _find_replay(self, issue: Issue, key: str) -> TransitionOutcome | None:
        for row in self._db.list_audit_events(subject_id=issue.id):
            if row["event_type"] != "issue_transitioned":
                continue
            payload = json.loads(row["payload"])
            if payload.get("idempotency_key") == key:
                return TransitionOutcome(
                    issue=issue,
                    from_state=IssueState(payload["from"]),
                    to_state=IssueState(payload["to"]),
                    idempotency_key=key,
                    replayed=True,
                )
        return None
