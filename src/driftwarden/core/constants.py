"""Driftwarden constants: filesystem layout, timeouts, and limits."""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from pathlib import Path

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    BLOCKED = 3
    CONFLICT = 4
    NOT_FOUND = 5


# ---------------------------------------------------------------------------
# Platform-specific data directory
# ---------------------------------------------------------------------------


def _default_data_dir() -> Path:
    """
    Return the platform-appropriate Driftwarden data directory.

    macOS : ~/Library/Application Support/driftwarden
    Linux : ~/.config/driftwarden
    Other : ~/.driftwarden
    """
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "driftwarden"
    if sys.platform.startswith("linux"):
        xdg = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
        return xdg / "driftwarden"
    return Path.home() / ".driftwarden"


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "config.toml"
DB_FILENAME = "driftwarden.db"
LAWBOOK_FILENAME = "lawbook.yaml"

# ---------------------------------------------------------------------------
# Timeouts and limits
# ---------------------------------------------------------------------------

DEFAULT_EVIDENCE_TIMEOUT_SECONDS = 5.0  # per evidence-store read
DEFAULT_EVIDENCE_MAX_RETRIES = 2
DEFAULT_EVIDENCE_BACKOFF_SECONDS = 0.2

DEFAULT_STEP_MAX_ATTEMPTS = 3  # external call retries per step
DEFAULT_STEP_BACKOFF_SECONDS = 0.5
DEFAULT_REPLAY_WAIT_SECONDS = 30.0  # wait for a concurrent run to finish

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GITHUB_TIMEOUT_SECONDS = 15.0
MIRROR_STALE_AFTER_SECONDS = 300  # snapshot older than this is marked stale

IDEMPOTENCY_KEY_MAX_LENGTH = 256
SHORT_ID_LENGTH = 12
