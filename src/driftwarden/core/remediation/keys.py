"""Deterministic keys for remediation runs and steps."""

from __future__ import annotations

from typing import Any

from driftwarden.core.hashing import content_hash


def inputs_hash(raw_inputs: dict[str, Any]) -> str:
    return content_hash(raw_inputs)


def run_key(incident_key: str, playbook_id: str, hashed_inputs: str) -> str:
    """``<incident_key>:<playbook_id>:<inputs_hash>``"""
    return f"{incident_key}:{playbook_id}:{hashed_inputs}"


def step_key(key: str, step_id: str) -> str:
    """Per-step idempotency key; the same across every attempt of a run key."""
    return "step:" + content_hash({"run_key": key, "step_id": step_id})[:32]
