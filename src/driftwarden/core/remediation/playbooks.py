"""
Playbook definitions and registry.

Four playbooks ship built in. More can be loaded from YAML, either one
playbook per document or a ``playbooks:`` list::

    id: restart-api
    version: "1.2"
    categories: [SERVICE_UNHEALTHY]
    required_evidence:
      - type: field_present
        kind: ecs
        path: [ref, service]
    steps:
      - step_id: restart
        action_type: RESTART_SERVICE
      - step_id: notify
        action_type: NOTIFY_SLACK
        best_effort: true
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from driftwarden.core.evidence.predicates import FieldPresent
from driftwarden.core.exceptions import NotFoundError
from driftwarden.core.policy.parser import PolicyParseError, format_validation_error
from driftwarden.core.remediation.models import ActionType, Playbook, PlaybookStep

logger = structlog.get_logger()

A = ActionType


def _field(kind: str, *path: str, description: str = "") -> FieldPresent:
    return FieldPresent(kind=kind, path=path, description=description or f"{kind} evidence missing {'.'.join(path)}")


# ---------------------------------------------------------------------------
# Built-in playbooks
# ---------------------------------------------------------------------------

RESTART_SERVICE = Playbook(
    id="restart-service",
    version="1.0.0",
    title="Restart service",
    categories=["ECS_TASK_CRASHLOOP", "SERVICE_UNHEALTHY"],
    required_evidence=[_field("ecs", "ref", "service")],
    steps=[
        PlaybookStep(step_id="drain", action_type=A.DRAIN_TASKS, description="Drain running tasks", best_effort=True),
        PlaybookStep(step_id="restart", action_type=A.RESTART_SERVICE, description="Restart the service"),
        PlaybookStep(step_id="verify", action_type=A.RUN_VERIFICATION, description="Verify service health"),
        PlaybookStep(step_id="notify", action_type=A.NOTIFY_SLACK, description="Notify the on-call channel", best_effort=True),
    ],
)

REDEPLOY_LKG = Playbook(
    id="redeploy-lkg",
    version="1.0.0",
    title="Redeploy last known good",
    categories=["DEPLOY_VERIFICATION_FAILED", "ALB_TARGET_UNHEALTHY", "ECS_TASK_CRASHLOOP"],
    required_evidence=[
        _field("deploy_status", "ref", "env"),
        _field("verification", "ref", "env"),
    ],
    steps=[
        PlaybookStep(step_id="select-lkg", action_type=A.ROLLBACK_DEPLOY, description="Find the last known good deployment"),
        PlaybookStep(step_id="dispatch-deploy", action_type=A.ROLLBACK_DEPLOY, description="Deploy the LKG reference"),
        PlaybookStep(
            step_id="post-deploy-verification",
            action_type=A.RUN_VERIFICATION,
            description="Verify the redeployed LKG",
        ),
        PlaybookStep(
            step_id="update-deploy-status",
            action_type=A.RUN_VERIFICATION,
            description="Record deploy status from the verification result",
        ),
    ],
)

RERUN_POST_DEPLOY_VERIFICATION = Playbook(
    id="rerun-post-deploy-verification",
    version="1.0.0",
    title="Re-run post-deploy verification",
    categories=["DEPLOY_VERIFICATION_FAILED", "ALB_TARGET_UNHEALTHY"],
    required_evidence=[
        _field("verification", "ref", "env"),
        _field("deploy_status", "ref", "env"),
    ],
    steps=[
        PlaybookStep(step_id="run-verification", action_type=A.RUN_VERIFICATION, description="Run post-deploy verification"),
        PlaybookStep(
            step_id="ingest-incident-update",
            action_type=A.RUN_VERIFICATION,
            description="Mark the incident mitigated when verification passes",
        ),
    ],
)

SERVICE_HEALTH_RESET = Playbook(
    id="service-health-reset",
    version="1.0.0",
    title="Service health reset",
    categories=["ALB_TARGET_UNHEALTHY", "ECS_TASK_CRASHLOOP"],
    required_evidence=[
        _field("ecs", "ref", "cluster"),
        _field("ecs", "ref", "service"),
        _field("alb", "ref", "targetGroup"),
    ],
    steps=[
        PlaybookStep(
            step_id="snapshot-state",
            action_type=A.SNAPSHOT_SERVICE_STATE,
            description="Snapshot the current service state",
        ),
        PlaybookStep(step_id="apply-reset", action_type=A.FORCE_NEW_DEPLOYMENT, description="Force a new deployment"),
        PlaybookStep(
            step_id="wait-observe",
            action_type=A.POLL_SERVICE_HEALTH,
            description="Poll service stability and target health",
        ),
        PlaybookStep(step_id="post-verification", action_type=A.RUN_VERIFICATION, description="Run post-deploy verification"),
        PlaybookStep(
            step_id="update-status",
            action_type=A.UPDATE_INCIDENT_STATUS,
            description="Update the incident from the verification result",
        ),
    ],
)

BUILTIN_PLAYBOOKS: tuple[Playbook, ...] = (
    RESTART_SERVICE,
    REDEPLOY_LKG,
    RERUN_POST_DEPLOY_VERIFICATION,
    SERVICE_HEALTH_RESET,
)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


def parse_playbooks(yaml_text: str, source: str = "<string>") -> list[Playbook]:
    """
    Parse one playbook or a ``playbooks:`` list from YAML.

    Raises:
        PolicyParseError: on YAML syntax errors or schema violations.
    """
    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise PolicyParseError(f"YAML syntax error in {source}: {exc}") from exc

    if not isinstance(data, dict):
        raise PolicyParseError(f"Playbook file {source} must be a YAML mapping (got {type(data).__name__})")

    documents: list[Any] = data["playbooks"] if "playbooks" in data else [data]
    if not isinstance(documents, list):
        raise PolicyParseError(f"'playbooks' in {source} must be a list")

    playbooks: list[Playbook] = []
    for index, doc in enumerate(documents):
        try:
            playbooks.append(Playbook.model_validate(doc))
        except ValidationError as exc:
            raise PolicyParseError(
                format_validation_error(exc, f"Playbook #{index} validation failed in {source}:")
            ) from exc
    return playbooks


def load_playbooks(path: str | Path) -> list[Playbook]:
    p = Path(path).expanduser()
    if not p.exists():
        raise PolicyParseError(f"Playbook file not found: {p}")
    try:
        content = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyParseError(f"Cannot read playbook file {p}: {exc}") from exc
    return parse_playbooks(content, source=str(p))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PlaybookRegistry:
    """Playbooks by id. A later registration with the same id replaces the earlier one."""

    def __init__(self, playbooks: Iterable[Playbook] = BUILTIN_PLAYBOOKS) -> None:
        self._playbooks: dict[str, Playbook] = {}
        for playbook in playbooks:
            self.register(playbook)

    def register(self, playbook: Playbook) -> None:
        if playbook.id in self._playbooks:
            logger.info("playbook_replaced", playbook_id=playbook.id, version=playbook.version)
        self._playbooks[playbook.id] = playbook

    def load_file(self, path: str | Path) -> list[Playbook]:
        loaded = load_playbooks(path)
        for playbook in loaded:
            self.register(playbook)
        return loaded

    def get(self, playbook_id: str) -> Playbook:
        try:
            return self._playbooks[playbook_id]
        except KeyError:
            raise NotFoundError(f"Unknown playbook: {playbook_id}") from None

    def list_playbooks(self) -> list[Playbook]:
        return sorted(self._playbooks.values(), key=lambda p: p.id)
