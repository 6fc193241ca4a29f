"""
Driftwarden: deterministic reconciliation and remediation engine.

Driftwarden tracks software-delivery issues through a canonical lifecycle,
mirrors that lifecycle against GitHub, flags drift between the two, and runs
guarded, idempotent remediation playbooks when incidents occur. Every state
change lands in a single hash-chained audit log.

Package layout (src/driftwarden/):
  core/hashing      canonical serialization + content hashes (idempotency keys)
  core/lifecycle    issue state machine and transition guards
  core/evidence     evidence facts, predicate interpreter, fail-closed reader
  core/policy       lawbook model, parser and guardrail gates
  core/drift        drift detector, repair suggestions, confirmed resolutions
  core/mirror       GitHub mirror client (read snapshots, apply actions)
  core/remediation  playbook planning and step execution
  core/audit        audit writer and chain verification
  core/store        SQLite persistence and schema migrations
  api/              FastAPI JSON surface
  cli/              Click CLI entry point
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
