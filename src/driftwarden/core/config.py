"""Driftwarden configuration: Pydantic model, load and save."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

from driftwarden.core.constants import (
    CONFIG_FILENAME,
    DB_FILENAME,
    DEFAULT_EVIDENCE_BACKOFF_SECONDS,
    DEFAULT_EVIDENCE_MAX_RETRIES,
    DEFAULT_EVIDENCE_TIMEOUT_SECONDS,
    DEFAULT_GITHUB_API_URL,
    DEFAULT_GITHUB_TIMEOUT_SECONDS,
    DEFAULT_REPLAY_WAIT_SECONDS,
    DEFAULT_STEP_BACKOFF_SECONDS,
    DEFAULT_STEP_MAX_ATTEMPTS,
    LAWBOOK_FILENAME,
    _default_data_dir,
)
from driftwarden.core.exceptions import ConfigError, ConfigNotFoundError


def driftwarden_dir() -> Path:
    """
    Return the Driftwarden data directory, creating it if needed.

    macOS : ~/Library/Application Support/driftwarden
    Linux : ~/.config/driftwarden  (or $XDG_CONFIG_HOME/driftwarden)
    Other : ~/.driftwarden
    """
    d = _default_data_dir()
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v


class DatabaseConfig(BaseModel):
    path: str = ""  # empty → use default


class GitHubConfig(BaseModel):
    token: SecretStr | None = None
    repo: str = ""  # owner/name; default for bare issue numbers
    api_url: str = DEFAULT_GITHUB_API_URL
    timeout_seconds: float = DEFAULT_GITHUB_TIMEOUT_SECONDS

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: str) -> str:
        if v and v.count("/") != 1:
            raise ValueError(f"github.repo must look like 'owner/name', got {v!r}")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if not (1.0 <= v <= 120.0):
            raise ValueError("github.timeout_seconds must be between 1 and 120")
        return v


class EvidenceConfig(BaseModel):
    timeout_seconds: float = DEFAULT_EVIDENCE_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_EVIDENCE_MAX_RETRIES
    backoff_seconds: float = DEFAULT_EVIDENCE_BACKOFF_SECONDS

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("evidence.timeout_seconds must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if not (0 <= v <= 10):
            raise ValueError("evidence.max_retries must be between 0 and 10")
        return v


class RemediationConfig(BaseModel):
    step_max_attempts: int = DEFAULT_STEP_MAX_ATTEMPTS
    step_backoff_seconds: float = DEFAULT_STEP_BACKOFF_SECONDS
    replay_wait_seconds: float = DEFAULT_REPLAY_WAIT_SECONDS
    playbooks_path: str = ""  # extra YAML playbooks
    notify_webhook_url: SecretStr | None = None  # handler for NOTIFY_SLACK

    @field_validator("step_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if not (1 <= v <= 10):
            raise ValueError("remediation.step_max_attempts must be between 1 and 10")
        return v

    @field_validator("step_backoff_seconds", "replay_wait_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v


class LawbookConfig(BaseModel):
    path: str = ""  # empty → <data dir>/lawbook.yaml


class StateMachineConfig(BaseModel):
    transitions_path: str = ""  # empty → built-in transition table


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8790

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("server.port must be between 1 and 65535")
        return v


_VALID_ENVIRONMENTS = frozenset({"dev", "staging", "production"})


class RuntimeConfig(BaseModel):
    """Runtime behaviour settings."""

    model_config = {"extra": "forbid"}

    environment: str = "dev"
    """Runtime environment: dev, staging, or production."""

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in _VALID_ENVIRONMENTS:
            raise ValueError(
                f"Invalid environment {v!r}. Must be one of: {sorted(_VALID_ENVIRONMENTS)}"
            )
        return v


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class DriftwardenConfig(BaseModel):
    """Root Driftwarden configuration model. Every section has defaults."""

    config_version: int = 1
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    evidence: EvidenceConfig = Field(default_factory=EvidenceConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    lawbook: LawbookConfig = Field(default_factory=LawbookConfig)
    state_machine: StateMachineConfig = Field(default_factory=StateMachineConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    # Computed paths (not stored in config file)
    _config_path: Path | None = None

    @property
    def db_path(self) -> Path:
        if self.database.path:
            return Path(self.database.path).expanduser()
        return driftwarden_dir() / DB_FILENAME

    @property
    def lawbook_path(self) -> Path:
        if self.lawbook.path:
            return Path(self.lawbook.path).expanduser()
        return driftwarden_dir() / LAWBOOK_FILENAME

    @property
    def transitions_path(self) -> Path | None:
        if self.state_machine.transitions_path:
            return Path(self.state_machine.transitions_path).expanduser()
        return None

    @property
    def playbooks_path(self) -> Path | None:
        if self.remediation.playbooks_path:
            return Path(self.remediation.playbooks_path).expanduser()
        return None


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("DRIFTWARDEN_CONFIG"):
        return Path(env_path)
    return driftwarden_dir() / CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> DriftwardenConfig:
    """
    Load DriftwardenConfig from a TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (DRIFTWARDEN_*)
      2. Config file ($DRIFTWARDEN_CONFIG or platform data dir / config.toml)

    Raises:
        ConfigNotFoundError: the file does not exist.
        ConfigError: the file cannot be read or fails validation.
    """
    import tomllib

    cfg_path = Path(path) if path is not None else _config_file_path()

    if not cfg_path.exists():
        raise ConfigNotFoundError(f"Config file not found: {cfg_path}")

    try:
        with open(cfg_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc

    _apply_env_overrides(data)

    config = _validate(data, str(cfg_path))
    config._config_path = cfg_path
    return config


def load_config_or_default(path: Path | str | None = None) -> DriftwardenConfig:
    """Like ``load_config`` but a missing file yields defaults (still env-overlaid)."""
    try:
        return load_config(path)
    except ConfigNotFoundError:
        data: dict[str, Any] = {}
        _apply_env_overrides(data)
        return _validate(data, "<defaults>")


def _validate(data: dict[str, Any], source: str) -> DriftwardenConfig:
    try:
        return DriftwardenConfig.model_validate(data)
    except ValueError as exc:
        raise ConfigError(f"Invalid config at {source}: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay DRIFTWARDEN_* environment variables onto parsed TOML."""

    def _env(name: str) -> str:
        return os.environ.get(name, "")

    if level := _env("DRIFTWARDEN_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level
    if fmt := _env("DRIFTWARDEN_LOG_FORMAT"):
        data.setdefault("logging", {})["format"] = fmt
    if db := _env("DRIFTWARDEN_DB_PATH"):
        data.setdefault("database", {})["path"] = db

    # GitHub
    if token := _env("DRIFTWARDEN_GITHUB_TOKEN") or _env("GITHUB_TOKEN"):
        data.setdefault("github", {})["token"] = token
    if repo := _env("DRIFTWARDEN_GITHUB_REPO"):
        data.setdefault("github", {})["repo"] = repo
    if api_url := _env("DRIFTWARDEN_GITHUB_API_URL"):
        data.setdefault("github", {})["api_url"] = api_url

    # Policy and state machine
    if lawbook := _env("DRIFTWARDEN_LAWBOOK_PATH"):
        data.setdefault("lawbook", {})["path"] = lawbook
    if transitions := _env("DRIFTWARDEN_TRANSITIONS_PATH"):
        data.setdefault("state_machine", {})["transitions_path"] = transitions
    if playbooks := _env("DRIFTWARDEN_PLAYBOOKS_PATH"):
        data.setdefault("remediation", {})["playbooks_path"] = playbooks
    if webhook := _env("DRIFTWARDEN_NOTIFY_WEBHOOK_URL"):
        data.setdefault("remediation", {})["notify_webhook_url"] = webhook

    # Runtime
    if env := _env("DRIFTWARDEN_ENVIRONMENT"):
        data.setdefault("runtime", {})["environment"] = env


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    config_data.setdefault("config_version", 1)

    # Write atomically
    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except (OSError, TypeError, ValueError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
