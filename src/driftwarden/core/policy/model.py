"""
Lawbook data model: the operator-controlled rules that gate remediation
runs and guard issue transitions.

A lawbook is loaded from YAML (see ``parser``) and validated here. It is
versioned: every remediation run stamps ``Lawbook.stamp()`` at plan time so
later edits never change how a past run is interpreted.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from driftwarden.core.evidence.predicates import Predicate
from driftwarden.core.hashing import content_hash

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")


class GuardrailEnforcement(str, Enum):
    """How a failing guardrail is treated."""

    HARD = "hard"  # blocks
    SOFT = "soft"  # blocks; may be lifted by editing the lawbook only
    ADVISORY = "advisory"  # logged, never blocks


class Guardrail(BaseModel):
    """
    A named guardrail referenced by transition definitions.

    A guardrail fails when ``deny`` is set or when any of its ``requires``
    predicates is unsatisfied by the issue's evidence.
    """

    model_config = {"extra": "forbid"}

    id: str
    description: str = ""
    enforcement: GuardrailEnforcement = GuardrailEnforcement.HARD
    deny: bool = False
    requires: list[Predicate] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def check_id(cls, v: str) -> str:
        if not _ID_RE.match(v):
            raise ValueError(f"Invalid guardrail id {v!r}")
        return v

    @property
    def blocking(self) -> bool:
        return self.enforcement != GuardrailEnforcement.ADVISORY


class RemediationPolicy(BaseModel):
    model_config = {"extra": "forbid"}

    enabled: bool = False
    """Master switch. When false every playbook run is denied."""

    allowed_playbooks: list[str] = Field(default_factory=list)
    allowed_actions: list[str] = Field(default_factory=list)

    max_runs_per_incident: int = Field(default=3, ge=0)
    """Executed runs (SKIPPED excluded) allowed per incident. 0 = unlimited."""

    cooldown_minutes: int = Field(default=0, ge=0)
    """Minimum gap between runs of the same playbook on the same incident."""


class EvidencePolicy(BaseModel):
    model_config = {"extra": "forbid"}

    required_kinds_by_category: dict[str, list[str]] = Field(default_factory=dict)
    """Incident category → evidence kinds that must exist before any run."""


class Lawbook(BaseModel):
    """Root lawbook document."""

    model_config = {"extra": "forbid"}

    version: str
    name: str = "default"
    remediation: RemediationPolicy = Field(default_factory=RemediationPolicy)
    evidence: EvidencePolicy = Field(default_factory=EvidencePolicy)
    guardrails: list[Guardrail] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def check_version(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("lawbook version must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def unique_guardrail_ids(self) -> Lawbook:
        seen: set[str] = set()
        for g in self.guardrails:
            if g.id in seen:
                raise ValueError(f"Duplicate guardrail id {g.id!r}: guardrail ids must be unique")
            seen.add(g.id)
        return self

    def guardrail(self, guardrail_id: str) -> Guardrail | None:
        for g in self.guardrails:
            if g.id == guardrail_id:
                return g
        return None

    def content_hash(self) -> str:
        """Stable SHA-256 hash of this lawbook's content."""
        return content_hash(self.model_dump(mode="json"))

    def stamp(self) -> str:
        """Version stamp recorded on every run: ``<version>@<hash prefix>``."""
        return f"{self.version}@{self.content_hash()[:12]}"
