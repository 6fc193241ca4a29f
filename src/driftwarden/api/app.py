"""
FastAPI application: the JSON surface over the engines.

Every error body is ``{code, message, reasons}``; the status code comes
from the exception type (see ``_STATUS_BY_ERROR``).

Usage::

    from driftwarden.api.app import create_app, start_server
    app = create_app()
    start_server(host="127.0.0.1", port=8790)
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from driftwarden.core.audit.writer import list_events
from driftwarden.core.config import DriftwardenConfig, load_config_or_default
from driftwarden.core.drift.models import RepairAction
from driftwarden.core.evidence.reader import put_evidence_fact
from driftwarden.core.exceptions import (
    BlockedTransitionError,
    ConcurrentModificationError,
    ConfigError,
    ConfirmationRequiredError,
    DriftwardenError,
    EvidenceUnavailableError,
    ExternalActionError,
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ResolutionConflictError,
    ValidationError,
)
from driftwarden.core.services import Services

logger = structlog.get_logger()

# Most specific first; the first isinstance match wins
_STATUS_BY_ERROR: list[tuple[type[DriftwardenError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (InvalidTransitionError, 422),
    (BlockedTransitionError, 422),
    (ConcurrentModificationError, 409),
    (ConfirmationRequiredError, 409),
    (ResolutionConflictError, 409),
    (PolicyViolationError, 403),
    (EvidenceUnavailableError, 503),
    (ExternalActionError, 502),
    (ConfigError, 500),
]


def status_for(exc: DriftwardenError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class IssueRequest(BaseModel):
    model_config = {"extra": "forbid"}

    title: str = Field(min_length=1)
    labels: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    github_ref: str = ""
    actor: str = "api"


class TransitionRequest(BaseModel):
    model_config = {"extra": "forbid"}

    issue_id: str = Field(min_length=1)
    to_state: str = Field(min_length=1)
    reason: str = ""
    actor: str = "api"
    idempotency_key: str | None = None


class PlaybookRunRequest(BaseModel):
    model_config = {"extra": "forbid"}

    incident_id: str = Field(min_length=1)
    playbook_id: str = Field(min_length=1)
    inputs: dict[str, Any] = Field(default_factory=dict)


class DriftResolveRequest(BaseModel):
    model_config = {"extra": "forbid"}

    detection_id: str = Field(min_length=1)
    suggestion_id: str | None = None
    manual_actions: list[RepairAction] | None = None
    confirmation: bool = False
    actor: str = "api"


class IncidentRequest(BaseModel):
    model_config = {"extra": "forbid"}

    incident_key: str = Field(min_length=1)
    title: str = ""
    category: str = ""
    severity: str = "P2"
    issue_id: str | None = None


class EvidenceRequest(BaseModel):
    model_config = {"extra": "forbid"}

    entity_id: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    observed_at: str | None = None


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class _AccessLogMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status, and elapsed time."""

    async def dispatch(self, request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=round(elapsed_ms, 1),
        )
        return response


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    config: DriftwardenConfig | None = None,
    services: Services | None = None,
) -> FastAPI:
    """Create the FastAPI application. *services* wins over *config* when both are given."""
    owned = services is None
    if services is None:
        services = Services(config or load_config_or_default())

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if owned:
            await services.aclose()

    app = FastAPI(
        title="Driftwarden",
        description="Issue lifecycle, GitHub drift detection and remediation playbooks",
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_middleware(_AccessLogMiddleware)

    @app.exception_handler(DriftwardenError)
    async def _driftwarden_error_handler(request: Request, exc: DriftwardenError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("api_error", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(exc.to_dict(), status_code=status)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        reasons = [
            {
                "type": "validation",
                "description": err.get("msg", ""),
                "ref": ".".join(str(p) for p in err.get("loc", ())),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            {"code": ValidationError.code, "message": "Invalid request body", "reasons": reasons},
            status_code=422,
        )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    @app.post("/issues", status_code=201)
    async def create_issue(body: IssueRequest):
        issue = services.engine.create_issue(
            body.title,
            labels=body.labels,
            metadata=body.metadata,
            github_ref=body.github_ref,
            actor=body.actor,
        )
        return issue.to_dict()

    @app.post("/transition")
    async def transition(body: TransitionRequest):
        outcome = await services.engine.apply_transition(
            body.issue_id,
            body.to_state,
            reason=body.reason,
            actor=body.actor,
            idempotency_key=body.idempotency_key,
        )
        return outcome.to_dict()

    @app.get("/issues/{issue_id}")
    async def get_issue(issue_id: str):
        issue = services.engine.get_issue(issue_id)
        data = issue.to_dict()
        data["valid_transitions"] = [s.value for s in services.engine.valid_transitions(issue.status)]
        return data

    # ------------------------------------------------------------------
    # Evidence and incidents
    # ------------------------------------------------------------------

    @app.post("/evidence")
    async def put_evidence(body: EvidenceRequest):
        fact, inserted = put_evidence_fact(
            services.db, body.entity_id, body.kind, body.payload, observed_at=body.observed_at
        )
        return {"inserted": inserted, "fact": fact.to_dict()}

    @app.post("/incidents")
    async def open_incident(body: IncidentRequest):
        incident = services.runner.open_incident(
            body.incident_key,
            title=body.title,
            category=body.category,
            severity=body.severity,
            issue_id=body.issue_id,
        )
        return incident.to_dict()

    # ------------------------------------------------------------------
    # Playbooks
    # ------------------------------------------------------------------

    @app.get("/playbooks")
    async def list_playbooks():
        return {
            "playbooks": [
                p.model_dump(mode="json", include={"id", "version", "title", "categories"})
                for p in services.registry.list_playbooks()
            ]
        }

    @app.post("/playbooks/run")
    async def run_playbook(body: PlaybookRunRequest):
        result = await services.runner.plan_and_execute(body.incident_id, body.playbook_id, body.inputs)
        return result.to_dict()

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        run = services.runner.get_run(run_id)
        data = run.to_dict()
        data["steps"] = [s.to_dict() for s in services.runner.get_steps(run_id)]
        return data

    @app.post("/runs/{run_id}/resume")
    async def resume_run(run_id: str):
        result = await services.runner.resume(run_id)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    @app.get("/drift/{entity_id}")
    async def detect_drift(entity_id: str):
        result = await services.stored_drift.detect(entity_id)
        return result.model_dump(mode="json")

    @app.post("/drift/resolve")
    async def resolve_drift(body: DriftResolveRequest):
        resolution = await services.drift.resolve(
            body.detection_id,
            body.suggestion_id,
            body.manual_actions,
            confirmation=body.confirmation,
            actor=body.actor,
        )
        return resolution.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @app.get("/audit/{subject_id}")
    async def audit_events(subject_id: str, limit: int = 0):
        return {"subject_id": subject_id, "events": list_events(services.db, subject_id, limit)}

    return app


def start_server(
    host: str = "127.0.0.1",
    port: int = 8790,
    config: DriftwardenConfig | None = None,
) -> None:
    """Start the API server (blocking)."""
    import uvicorn

    app = create_app(config)
    logger.info("api_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_level="warning")
