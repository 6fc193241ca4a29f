"""
Lawbook YAML parser.

Usage::

    lawbook = load_lawbook("~/.config/driftwarden/lawbook.yaml")
    lawbook = parse_lawbook(yaml_string)

    provider = LawbookProvider(path)
    provider.get_active_policy()   # Lawbook | None (None → deny everything)
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from driftwarden.core.policy.model import Lawbook

logger = structlog.get_logger()


class PolicyParseError(ValueError):
    """Raised when a lawbook file cannot be parsed or fails validation."""


def load_lawbook(path: str | Path) -> Lawbook:
    """
    Load and validate a lawbook from a YAML file.

    Raises:
        PolicyParseError: if the file is missing, unreadable, or invalid.
    """
    p = Path(path).expanduser()
    if not p.exists():
        raise PolicyParseError(f"Lawbook file not found: {p}")
    try:
        content = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyParseError(f"Cannot read lawbook file {p}: {exc}") from exc
    return parse_lawbook(content, source=str(p))


def parse_lawbook(yaml_text: str, source: str = "<string>") -> Lawbook:
    """
    Parse and validate a YAML lawbook string.

    Raises:
        PolicyParseError: on YAML syntax errors or schema violations.
    """
    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise PolicyParseError(f"YAML syntax error in {source}: {exc}") from exc

    if not isinstance(data, dict):
        raise PolicyParseError(
            f"Lawbook {source} must be a YAML mapping (got {type(data).__name__})"
        )

    # YAML reads `version: 1` as an int
    if "version" in data and data["version"] is not None:
        data["version"] = str(data["version"])

    try:
        return Lawbook.model_validate(data)
    except ValidationError as exc:
        raise PolicyParseError(format_validation_error(exc, f"Lawbook validation failed in {source}:")) from exc


def format_validation_error(exc: ValidationError, header: str) -> str:
    lines = [header]
    for err in exc.errors():
        loc = " → ".join(str(x) for x in err["loc"]) if err["loc"] else "(root)"
        lines.append(f"  {loc}: {err['msg']}")
    return "\n".join(lines)


def validate_lawbook_file(path: str | Path) -> list[str]:
    """
    Validate a lawbook file and return a list of human-readable error strings.

    Returns an empty list if the lawbook is valid.
    """
    try:
        load_lawbook(path)
        return []
    except PolicyParseError as exc:
        return str(exc).splitlines()


class LawbookProvider:
    """
    Supplies the active lawbook.

    The file is re-read when its mtime changes. A missing or invalid file
    yields ``None``, which every gate treats as deny-all.
    """

    def __init__(self, path: Path | None = None, lawbook: Lawbook | None = None) -> None:
        self._path = path
        self._lawbook = lawbook
        self._mtime: float | None = None

    def get_active_policy(self) -> Lawbook | None:
        if self._path is None:
            return self._lawbook
        try:
            mtime = self._path.stat().st_mtime
        except OSError:
            logger.warning("lawbook_missing", path=str(self._path))
            return None
        if self._lawbook is None or mtime != self._mtime:
            try:
                self._lawbook = load_lawbook(self._path)
            except PolicyParseError as exc:
                logger.error("lawbook_invalid", path=str(self._path), error=str(exc))
                self._lawbook = None
                return None
            self._mtime = mtime
            logger.info("lawbook_loaded", path=str(self._path), version=self._lawbook.stamp())
        return self._lawbook
