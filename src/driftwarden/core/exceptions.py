"""
Driftwarden exception hierarchy.

Every error carries a machine-readable ``code``. Errors that block an
operation (transitions, gates) also carry a list of structured ``reasons``
so callers never see a bare "failed".
"""

from __future__ import annotations

from typing import Any


class DriftwardenError(Exception):
    """Base exception for all Driftwarden errors."""

    code: str = "ERROR"

    def __init__(self, message: str = "", *, reasons: list[Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reasons: list[Any] = list(reasons or [])

    def to_dict(self) -> dict[str, Any]:
        reasons = [r.to_dict() if hasattr(r, "to_dict") else r for r in self.reasons]
        return {"code": self.code, "message": self.message, "reasons": reasons}


class ConfigError(DriftwardenError):
    """Raised when the configuration is invalid or cannot be read."""

    code = "CONFIG_ERROR"


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""

    code = "CONFIG_NOT_FOUND"


class ValidationError(DriftwardenError):
    """Malformed input. Never reaches the state machine or the runner."""

    code = "VALIDATION_ERROR"


class CyclicStructureError(ValidationError):
    """Raised by the canonicalizer when a value references itself."""

    code = "CYCLIC_STRUCTURE"


class NotFoundError(DriftwardenError):
    """Raised when an issue, detection, run or playbook does not exist."""

    code = "NOT_FOUND"


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TransitionError(DriftwardenError):
    """Base class for rejected issue transitions."""

    code = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """The requested edge does not exist in the transition table."""

    code = "INVALID_TRANSITION"


class BlockedTransitionError(TransitionError):
    """The edge exists but its evidence or guardrail preconditions are unmet."""

    code = "BLOCKED"


class ConcurrentModificationError(TransitionError):
    """Lost the race on a uniqueness or version constraint; refetch and retry."""

    code = "CONCURRENT_MODIFICATION"


# ---------------------------------------------------------------------------
# Evidence, policy, external actions
# ---------------------------------------------------------------------------


class EvidenceUnavailableError(DriftwardenError):
    """The evidence store could not be read in time. Treated as blocking."""

    code = "EVIDENCE_UNAVAILABLE"


class PolicyViolationError(DriftwardenError):
    """The active lawbook denies the action. Never bypassable by retry."""

    code = "POLICY_VIOLATION"


class ExternalActionError(DriftwardenError):
    """An external call made by a playbook step or a drift resolution failed."""

    code = "EXTERNAL_ACTION_FAILED"

    def __init__(
        self,
        message: str = "",
        *,
        transient: bool = True,
        reasons: list[Any] | None = None,
    ) -> None:
        super().__init__(message, reasons=reasons)
        self.transient = transient


class ConfirmationRequiredError(DriftwardenError):
    """A drift resolution was requested without ``confirmation=True``."""

    code = "ERR_CONFIRMATION_REQUIRED"


class ResolutionConflictError(DriftwardenError):
    """The drift detection was already resolved."""

    code = "ALREADY_RESOLVED"
