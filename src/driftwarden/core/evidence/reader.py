"""
Evidence store adapter.

The core reads evidence through ``EvidenceReader``, which wraps any
``EvidenceStore`` with a per-call timeout and a bounded retry with
exponential backoff. When the store cannot answer in time the reader
raises ``EvidenceUnavailableError``; callers turn that into a blocking
reason rather than proceeding without evidence.

Writes go through ``put_evidence_fact``, which is idempotent by
``(entity_id, kind, content_hash)`` and records an ``evidence_recorded``
audit event only when the fact is new.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from driftwarden.core.audit.writer import AuditWriter
from driftwarden.core.constants import (
    DEFAULT_EVIDENCE_BACKOFF_SECONDS,
    DEFAULT_EVIDENCE_MAX_RETRIES,
    DEFAULT_EVIDENCE_TIMEOUT_SECONDS,
)
from driftwarden.core.evidence.models import (
    BlockingReason,
    EvidenceFact,
    EvidenceSnapshot,
    ReasonType,
)
from driftwarden.core.exceptions import EvidenceUnavailableError, ValidationError
from driftwarden.core.hashing import content_hash
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


def _normalise_observed_at(value: str | None) -> str:
    """UTC ISO-8601 with microseconds, so stored timestamps sort as text."""
    if not value:
        moment = datetime.now(UTC)
    else:
        try:
            moment = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"observed_at is not an ISO-8601 timestamp: {value!r}") from exc
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


class EvidenceStore(Protocol):
    async def fetch(self, entity_id: str, kinds: list[str] | None = None) -> list[EvidenceFact]: ...


class SqliteEvidenceStore:
    """Evidence store backed by the ``evidence_facts`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def fetch(self, entity_id: str, kinds: list[str] | None = None) -> list[EvidenceFact]:
        rows = self._db.list_evidence_facts(entity_id, kinds)
        return [EvidenceFact.from_row(r) for r in rows]


def put_evidence_fact(
    db: Database,
    entity_id: str,
    kind: str,
    payload: dict[str, Any],
    content_hash_value: str | None = None,
    observed_at: str | None = None,
) -> tuple[EvidenceFact, bool]:
    """
    Ingest one fact. Returns ``(fact, inserted)``.

    Re-putting an identical fact records nothing new (``inserted`` is False)
    but refreshes its ``observed_at``. Naive timestamps are read as UTC.
    """
    if not entity_id or not kind:
        raise ValidationError("entity_id and kind are required")
    if not isinstance(payload, dict):
        raise ValidationError("evidence payload must be a mapping")

    fact_hash = content_hash_value or content_hash(payload)
    observed = _normalise_observed_at(observed_at)
    with db.transaction():
        inserted = db.insert_evidence_fact(entity_id, kind, payload, fact_hash, observed)
        if inserted:
            AuditWriter(db).evidence_recorded(entity_id, kind, fact_hash)

    if inserted:
        logger.info("evidence_recorded", entity_id=entity_id, kind=kind, content_hash=fact_hash[:12])
    return (
        EvidenceFact(
            entity_id=entity_id,
            kind=kind,
            payload=payload,
            content_hash=fact_hash,
            observed_at=observed,
        ),
        inserted,
    )


class EvidenceReader:
    """Timeout- and retry-bounded reads from an ``EvidenceStore``."""

    def __init__(
        self,
        store: EvidenceStore,
        *,
        timeout_seconds: float = DEFAULT_EVIDENCE_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_EVIDENCE_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_EVIDENCE_BACKOFF_SECONDS,
    ) -> None:
        self._store = store
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff = backoff_seconds

    async def read(self, entity_id: str, kinds: list[str] | None = None) -> EvidenceSnapshot:
        """
        Read every fact for *entity_id* (optionally limited to *kinds*).

        Raises:
            EvidenceUnavailableError: every attempt timed out or failed.
        """
        last_error: BaseException | None = None
        for attempt in range(self._max_retries + 1):
            try:
                facts = await asyncio.wait_for(
                    self._store.fetch(entity_id, kinds), timeout=self._timeout
                )
                return EvidenceSnapshot(entity_id=entity_id, facts=tuple(facts))
            except TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "evidence_read_timeout",
                    entity_id=entity_id,
                    attempt=attempt + 1,
                    timeout_seconds=self._timeout,
                )
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "evidence_read_failed",
                    entity_id=entity_id,
                    attempt=attempt + 1,
                    error=str(exc),
                )
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff * (2**attempt))

        raise EvidenceUnavailableError(
            f"Evidence for {entity_id} unavailable after {self._max_retries + 1} attempt(s)",
            reasons=[unavailable_reason(entity_id, last_error)],
        ) from last_error


def unavailable_reason(entity_id: str, error: BaseException | None = None) -> BlockingReason:
    detail = f": {error}" if error is not None and str(error) else ""
    return BlockingReason(
        type=ReasonType.EVIDENCE_UNAVAILABLE.value,
        description=f"evidence store unavailable for {entity_id}{detail}",
    )
