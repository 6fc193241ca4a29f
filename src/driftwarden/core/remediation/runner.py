"""
PlaybookRunner: plans and executes remediation playbooks.

Planning is deterministic: the same incident, playbook and inputs always
produce the same ``run_key``. At most one live run (PLANNED, RUNNING or
SUCCEEDED) holds a run key; the partial unique index in the store decides
races, and the loser observes the winner's run as an idempotent replay.
A FAILED run releases its key, so retrying plans a new ``attempt``.

Gate order in ``plan``:

  1. Live run already holds the key      → replay (nothing written)
  2. Key format, ROLLBACK_DEPLOY scope,
     category fit, lawbook gates          → SKIPPED / LAWBOOK_DENIED
  3. Evidence (category kinds, predicates;
     unavailable store counts as missing) → SKIPPED / EVIDENCE_MISSING
  4. Otherwise                            → PLANNED run + PLANNED steps

Execution runs steps strictly in order. Each state change commits with its
audit event before the next step starts, so ``resume`` can pick up from the
first step that is not finished.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from driftwarden.core.audit.writer import AuditWriter
from driftwarden.core.constants import (
    DEFAULT_REPLAY_WAIT_SECONDS,
    DEFAULT_STEP_BACKOFF_SECONDS,
    DEFAULT_STEP_MAX_ATTEMPTS,
)
from driftwarden.core.evidence.models import BlockingReason, ReasonType
from driftwarden.core.evidence.predicates import blocking_reasons, evaluate_all
from driftwarden.core.evidence.reader import EvidenceReader, SqliteEvidenceStore
from driftwarden.core.exceptions import (
    ConcurrentModificationError,
    DriftwardenError,
    EvidenceUnavailableError,
    ExternalActionError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from driftwarden.core.policy.gates import (
    check_key_format,
    evaluate_remediation_gates,
    missing_evidence_kinds,
    required_evidence_kinds,
)
from driftwarden.core.policy.model import Lawbook
from driftwarden.core.policy.parser import LawbookProvider
from driftwarden.core.remediation import keys
from driftwarden.core.remediation.actions import ActionDispatcher, StepContext
from driftwarden.core.remediation.models import (
    ROLLBACK_PLAYBOOK_ID,
    ActionType,
    ExecutionResult,
    Incident,
    PlanResult,
    Playbook,
    RemediationRun,
    RemediationStep,
    RunStatus,
    SkipReason,
    StepStatus,
)
from driftwarden.core.remediation.playbooks import PlaybookRegistry
from driftwarden.core.store.database import Database

logger = structlog.get_logger()

NO_LAWBOOK_VERSION = "NONE"
_REPLAY_POLL_SECONDS = 0.05


def _policy_reason(code: str, description: str) -> BlockingReason:
    return BlockingReason(type=ReasonType.POLICY.value, description=description, ref=code)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class PlaybookRunner:
    def __init__(
        self,
        db: Database,
        *,
        registry: PlaybookRegistry | None = None,
        dispatcher: ActionDispatcher | None = None,
        reader: EvidenceReader | None = None,
        lawbooks: LawbookProvider | None = None,
        step_max_attempts: int = DEFAULT_STEP_MAX_ATTEMPTS,
        step_backoff_seconds: float = DEFAULT_STEP_BACKOFF_SECONDS,
        replay_wait_seconds: float = DEFAULT_REPLAY_WAIT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._registry = registry or PlaybookRegistry()
        self._dispatcher = dispatcher or ActionDispatcher(db)
        self._reader = reader or EvidenceReader(SqliteEvidenceStore(db))
        self._lawbooks = lawbooks or LawbookProvider()
        self._step_max_attempts = max(1, step_max_attempts)
        self._step_backoff = step_backoff_seconds
        self._replay_wait = replay_wait_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._audit = AuditWriter(db)

    @property
    def registry(self) -> PlaybookRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def open_incident(
        self,
        incident_key: str,
        *,
        title: str = "",
        category: str = "",
        severity: str = "P2",
        issue_id: str | None = None,
    ) -> Incident:
        """Create an incident, or update the one that already has *incident_key*."""
        bad_key = check_key_format(incident_key)
        if bad_key is not None:
            raise ValidationError(f"Invalid incident key {incident_key!r}", reasons=[bad_key])
        self._db.upsert_incident(str(uuid.uuid4()), incident_key, title, category, severity, issue_id)
        logger.info("incident_recorded", incident_key=incident_key, category=category)
        return self.get_incident(incident_key)

    def get_incident(self, incident_ref: str) -> Incident:
        row = self._db.get_incident(incident_ref)
        if row is None:
            raise NotFoundError(f"Incident not found: {incident_ref}")
        return Incident.from_row(row)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> RemediationRun:
        row = self._db.get_run(run_id)
        if row is None:
            raise NotFoundError(f"Remediation run not found: {run_id}")
        return RemediationRun.from_row(row)

    def get_steps(self, run_id: str) -> list[RemediationStep]:
        return [RemediationStep.from_row(r) for r in self._db.list_steps(run_id)]

    def list_runs(self, incident_ref: str = "", limit: int = 50) -> list[RemediationRun]:
        incident_id = self.get_incident(incident_ref).id if incident_ref else ""
        return [RemediationRun.from_row(r) for r in self._db.list_runs(incident_id, limit)]

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    async def plan(
        self,
        incident_ref: str,
        playbook: Playbook | str,
        raw_inputs: dict[str, Any] | None = None,
    ) -> PlanResult:
        incident = self.get_incident(incident_ref)
        if isinstance(playbook, str):
            playbook = self._registry.get(playbook)
        inputs = dict(raw_inputs or {})

        hashed = keys.inputs_hash(inputs)
        key = keys.run_key(incident.incident_key, playbook.id, hashed)
        log = logger.bind(run_key=key, incident_id=incident.id, playbook_id=playbook.id)

        replay = self._replay(key)
        if replay is not None:
            log.info("run_replayed", run_id=replay.run.id, status=replay.run.status.value)
            return replay

        lawbook = self._lawbooks.get_active_policy()
        stamp = lawbook.stamp() if lawbook is not None else NO_LAWBOOK_VERSION

        denied = self._gate_reasons(lawbook, incident, playbook, key)
        if denied:
            return self._skip(incident, playbook, key, hashed, stamp, SkipReason.LAWBOOK_DENIED, denied)

        missing = await self._evidence_reasons(lawbook, incident, playbook)
        if missing:
            return self._skip(incident, playbook, key, hashed, stamp, SkipReason.EVIDENCE_MISSING, missing)

        resolved = {**inputs, "incident_id": incident.id, "incident_key": incident.incident_key}
        planned = {
            "playbook_id": playbook.id,
            "playbook_version": playbook.version,
            "lawbook_version": stamp,
            "inputs_hash": hashed,
            "steps": [
                {
                    "step_id": s.step_id,
                    "action_type": s.action_type.value,
                    "best_effort": s.best_effort,
                    "params": s.params,
                    "max_attempts": s.max_attempts,
                }
                for s in playbook.steps
            ],
        }
        run_id = str(uuid.uuid4())
        try:
            with self._db.transaction():
                attempt = self._db.next_attempt(key)
                self._db.insert_run(
                    run_id,
                    key,
                    attempt,
                    incident.id,
                    playbook.id,
                    playbook.version,
                    RunStatus.PLANNED.value,
                    stamp,
                    hashed,
                    planned,
                )
                for position, step in enumerate(playbook.steps):
                    self._db.insert_step(
                        str(uuid.uuid4()),
                        run_id,
                        step.step_id,
                        position,
                        step.action_type.value,
                        keys.step_key(key, step.step_id),
                        step.best_effort,
                        resolved,
                    )
                self._audit.run_planned(
                    run_id,
                    run_key=key,
                    attempt=attempt,
                    incident_id=incident.id,
                    playbook_id=playbook.id,
                    lawbook_version=stamp,
                    step_ids=[s.step_id for s in playbook.steps],
                )
        except sqlite3.IntegrityError:
            # Another planner won the live-key index; observe its run
            replay = self._replay(key)
            if replay is None:
                raise
            log.info("run_plan_lost_race", run_id=replay.run.id)
            return replay

        log.info("run_planned", run_id=run_id, attempt=attempt, lawbook_version=stamp)
        return PlanResult(run=self.get_run(run_id), steps=self.get_steps(run_id))

    def _replay(self, key: str) -> PlanResult | None:
        row = self._db.get_live_run_by_key(key)
        if row is None:
            return None
        run = RemediationRun.from_row(row)
        self._audit.run_skipped(
            run.id,
            run_key=key,
            skip_reason=SkipReason.IDEMPOTENT_REPLAY.value,
            replay_of=run.id,
        )
        return PlanResult(run=run, steps=self.get_steps(run.id), replayed=True)

    def _gate_reasons(
        self, lawbook: Lawbook | None, incident: Incident, playbook: Playbook, key: str
    ) -> list[BlockingReason]:
        reasons: list[BlockingReason] = []
        bad_key = check_key_format(key)
        if bad_key is not None:
            reasons.append(bad_key)
        if ActionType.ROLLBACK_DEPLOY.value in playbook.action_types and playbook.id != ROLLBACK_PLAYBOOK_ID:
            reasons.append(
                _policy_reason(
                    "rollback_not_allowed",
                    f"action 'ROLLBACK_DEPLOY' is only allowed in playbook '{ROLLBACK_PLAYBOOK_ID}'",
                )
            )
        if not playbook.applies_to(incident.category):
            reasons.append(
                _policy_reason(
                    "category_not_applicable",
                    f"playbook '{playbook.id}' does not apply to category '{incident.category or '-'}'",
                )
            )
        last = self._db.last_executed_run(incident.id, playbook.id)
        verdict = evaluate_remediation_gates(
            lawbook,
            playbook_id=playbook.id,
            action_types=playbook.action_types,
            executed_runs=self._db.count_executed_runs(incident.id),
            last_run_at=_parse_ts(last["created_at"]) if last else None,
            now=self._clock(),
        )
        reasons.extend(verdict.reasons)
        return reasons

    async def _evidence_reasons(
        self, lawbook: Lawbook | None, incident: Incident, playbook: Playbook
    ) -> list[BlockingReason]:
        try:
            facts = list((await self._reader.read(incident.id)).facts)
        except EvidenceUnavailableError as exc:
            return list(exc.reasons)
        reasons = missing_evidence_kinds(required_evidence_kinds(lawbook, incident.category), facts)
        reasons.extend(blocking_reasons(evaluate_all(playbook.required_evidence, facts)))
        return reasons

    def _skip(
        self,
        incident: Incident,
        playbook: Playbook,
        key: str,
        hashed: str,
        stamp: str,
        skip_reason: SkipReason,
        reasons: list[BlockingReason],
    ) -> PlanResult:
        run_id = str(uuid.uuid4())
        reason_dicts = [r.to_dict() for r in reasons]
        with self._db.transaction():
            self._db.insert_run(
                run_id,
                key,
                self._db.next_attempt(key),
                incident.id,
                playbook.id,
                playbook.version,
                RunStatus.SKIPPED.value,
                stamp,
                hashed,
                {},
                skip_reason=skip_reason.value,
                result={"reasons": reason_dicts, "message": reasons[0].description},
            )
            self._audit.run_skipped(run_id, run_key=key, skip_reason=skip_reason.value, reasons=reason_dicts)
        logger.info(
            "run_skipped",
            run_id=run_id,
            run_key=key,
            skip_reason=skip_reason.value,
            reasons=[r.ref or r.type for r in reasons],
        )
        return PlanResult(run=self.get_run(run_id), reasons=reasons)

    # ------------------------------------------------------------------
    # Execute / resume
    # ------------------------------------------------------------------

    async def execute(self, run_id: str) -> ExecutionResult:
        """
        Run a PLANNED run to completion.

        Raises:
            ConcurrentModificationError: the run is already RUNNING elsewhere.
            PolicyViolationError: the active lawbook no longer enables remediation.
        """
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return ExecutionResult(run=run, steps=self.get_steps(run.id))
        if run.status == RunStatus.RUNNING:
            raise ConcurrentModificationError(f"Run {run.id} is already running; use resume after a crash")

        self._check_enabled(run)
        with self._db.transaction():
            if self._db.advance_run(run.id, RunStatus.RUNNING.value, (RunStatus.PLANNED.value,)) == 0:
                raise ConcurrentModificationError(f"Run {run.id} was started concurrently")
            self._audit.run_started(run.id, run.run_key)
        logger.info("run_started", run_id=run.id, run_key=run.run_key)
        return await self._drive(self.get_run(run.id))

    async def resume(self, run_id: str) -> ExecutionResult:
        """Continue a RUNNING run from its first unfinished step."""
        run = self.get_run(run_id)
        if run.status == RunStatus.PLANNED:
            return await self.execute(run.id)
        if run.status.is_terminal:
            return ExecutionResult(run=run, steps=self.get_steps(run.id))

        self._check_enabled(run)
        with self._db.transaction():
            start = self._db.count_audit_events(run.id, "run_started") + 1
            self._audit.run_started(run.id, run.run_key, resumed=True, start=start)
        logger.info("run_resumed", run_id=run.id, run_key=run.run_key, start=start)
        return await self._drive(run)

    async def plan_and_execute(
        self,
        incident_ref: str,
        playbook: Playbook | str,
        raw_inputs: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """
        Plan, then execute unless skipped.

        A replay waits up to ``replay_wait_seconds`` for the existing run to
        finish and returns its state, finished or not.
        """
        planned = await self.plan(incident_ref, playbook, raw_inputs)
        if planned.replayed:
            run = await self._wait_terminal(planned.run.id)
            return ExecutionResult(
                run=run,
                steps=self.get_steps(run.id),
                replayed=True,
                skip_reason=SkipReason.IDEMPOTENT_REPLAY.value,
            )
        if planned.status == RunStatus.SKIPPED:
            return ExecutionResult(run=planned.run, skip_reason=planned.run.skip_reason)
        return await self.execute(planned.run.id)

    async def _wait_terminal(self, run_id: str) -> RemediationRun:
        deadline = time.monotonic() + self._replay_wait
        run = self.get_run(run_id)
        while not run.status.is_terminal and time.monotonic() < deadline:
            await asyncio.sleep(_REPLAY_POLL_SECONDS)
            run = self.get_run(run_id)
        return run

    def _check_enabled(self, run: RemediationRun) -> None:
        lawbook = self._lawbooks.get_active_policy()
        if lawbook is None or not lawbook.remediation.enabled:
            logger.warning("run_blocked_by_kill_switch", run_id=run.id)
            raise PolicyViolationError(
                "Remediation is disabled by the active lawbook",
                reasons=[_policy_reason("remediation_disabled", "remediation is disabled by the lawbook")],
            )

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _drive(self, run: RemediationRun) -> ExecutionResult:
        incident = self.get_incident(run.incident_id)
        plan_steps = {s["step_id"]: s for s in run.planned.get("steps", [])}
        try:
            facts = (await self._reader.read(incident.id)).facts
        except EvidenceUnavailableError:
            facts = ()
            logger.warning("run_evidence_unavailable", run_id=run.id)

        outputs: dict[str, dict[str, Any]] = {}
        for step in self.get_steps(run.id):
            if step.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED):
                outputs[step.step_id] = step.output or {}
                continue
            if step.status == StepStatus.FAILED:
                if step.best_effort:
                    continue
                return self._finish(run, RunStatus.FAILED, failed_step=step.step_id)

            prior = self._db.find_succeeded_step(step.idempotency_key)
            if prior is not None and step.status == StepStatus.PLANNED:
                self._skip_applied(run, step, prior)
                outputs[step.step_id] = self._db_output(prior)
                continue

            if step.status == StepStatus.PLANNED:
                with self._db.transaction():
                    if self._db.advance_step(step.id, StepStatus.RUNNING.value, (StepStatus.PLANNED.value,)) == 0:
                        raise ConcurrentModificationError(f"Step {step.step_id} of run {run.id} moved concurrently")
                    self._audit.step_started(run.id, step.step_id, step.idempotency_key)

            planned_step = plan_steps.get(step.step_id, {})
            ctx = StepContext(
                run_id=run.id,
                run_key=run.run_key,
                step_id=step.step_id,
                action_type=ActionType(step.action_type),
                idempotency_key=step.idempotency_key,
                incident=incident,
                lawbook_version=run.lawbook_version,
                inputs=dict(step.input),
                params=dict(planned_step.get("params") or {}),
                evidence=tuple(facts),
                prior_outputs=dict(outputs),
            )
            output = await self._run_step(run, step, ctx, planned_step.get("max_attempts") or self._step_max_attempts)
            if output is not None:
                outputs[step.step_id] = output
            elif not step.best_effort:
                return self._finish(run, RunStatus.FAILED, failed_step=step.step_id)

        return self._finish(run, RunStatus.SUCCEEDED)

    @staticmethod
    def _db_output(row: sqlite3.Row) -> dict[str, Any]:
        return RemediationStep.from_row(row).output or {}

    def _skip_applied(self, run: RemediationRun, step: RemediationStep, prior: sqlite3.Row) -> None:
        with self._db.transaction():
            self._db.advance_step(
                step.id,
                StepStatus.SKIPPED.value,
                (StepStatus.PLANNED.value,),
                output=self._db_output(prior),
            )
            self._audit.step_finished(
                run.id,
                step.step_id,
                StepStatus.SKIPPED.value,
                skip_reason=SkipReason.ALREADY_APPLIED.value,
            )
        logger.info("step_already_applied", run_id=run.id, step_id=step.step_id)

    async def _run_step(
        self, run: RemediationRun, step: RemediationStep, ctx: StepContext, max_attempts: int
    ) -> dict[str, Any] | None:
        """Dispatch with bounded retries. Returns the output, or None on failure."""
        log = logger.bind(run_id=run.id, step_id=step.step_id, action_type=step.action_type)
        attempts = 0
        error: dict[str, Any] | None = None
        output: dict[str, Any] | None = None

        try:
            while True:
                attempts += 1
                try:
                    result = await self._dispatcher.dispatch(ctx)
                    output = dict(result.output)
                    break
                except ExternalActionError as exc:
                    if exc.transient and attempts < max_attempts:
                        delay = self._step_backoff * (2 ** (attempts - 1))
                        log.warning("step_retrying", attempt=attempts, delay=delay, error=str(exc))
                    else:
                        error = {"code": exc.code, "message": str(exc), "transient": exc.transient}
                        break
                except DriftwardenError as exc:
                    error = {"code": exc.code, "message": str(exc)}
                    break
                except Exception as exc:
                    log.exception("step_execution_error")
                    error = {"code": "EXECUTION_ERROR", "message": str(exc)}
                    break
                # transient failure: back off, then retry
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._record_cancelled(run, step, attempts)
            raise

        if error is None:
            with self._db.transaction():
                self._db.advance_step(
                    step.id, StepStatus.SUCCEEDED.value, (StepStatus.RUNNING.value,), output=output
                )
                self._audit.step_finished(run.id, step.step_id, StepStatus.SUCCEEDED.value, attempts=attempts)
            log.info("step_succeeded", attempts=attempts)
            return output

        with self._db.transaction():
            self._db.advance_step(step.id, StepStatus.FAILED.value, (StepStatus.RUNNING.value,), error=error)
            self._audit.step_finished(
                run.id,
                step.step_id,
                StepStatus.FAILED.value,
                error_code=error["code"],
                error_message=error["message"],
                attempts=attempts,
            )
        log.warning("step_failed", attempts=attempts, code=error["code"], best_effort=step.best_effort)
        return None

    def _record_cancelled(self, run: RemediationRun, step: RemediationStep, attempts: int) -> None:
        with self._db.transaction():
            self._db.advance_step(
                step.id,
                StepStatus.FAILED.value,
                (StepStatus.RUNNING.value,),
                error={"code": "cancelled", "message": "step cancelled"},
            )
            self._audit.step_finished(
                run.id,
                step.step_id,
                StepStatus.FAILED.value,
                error_code="cancelled",
                error_message="step cancelled",
                attempts=attempts,
            )
        self._finish(run, RunStatus.FAILED, failed_step=step.step_id)
        logger.warning("run_cancelled", run_id=run.id, step_id=step.step_id)

    def _finish(
        self, run: RemediationRun, status: RunStatus, failed_step: str | None = None
    ) -> ExecutionResult:
        steps = self.get_steps(run.id)
        summary = {
            "total": len(steps),
            "succeeded": sum(1 for s in steps if s.status == StepStatus.SUCCEEDED),
            "skipped": sum(1 for s in steps if s.status == StepStatus.SKIPPED),
            "failed": sum(1 for s in steps if s.status == StepStatus.FAILED),
        }
        with self._db.transaction():
            moved = self._db.advance_run(
                run.id,
                status.value,
                (RunStatus.RUNNING.value,),
                result={"summary": summary, "failed_step": failed_step},
            )
            if moved:
                self._audit.run_finished(
                    run.id, status.value, run_key=run.run_key, failed_step=failed_step, summary=summary
                )
        if moved:
            logger.info("run_finished", run_id=run.id, status=status.value, failed_step=failed_step, **summary)
        return ExecutionResult(run=self.get_run(run.id), steps=steps)
