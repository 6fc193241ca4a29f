"""Unit tests for configuration loading, env overrides and saving."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from driftwarden.core.config import (
    DriftwardenConfig,
    load_config,
    load_config_or_default,
    save_config,
)
from driftwarden.core.exceptions import ConfigError, ConfigNotFoundError

_ENV_VARS = [
    "DRIFTWARDEN_CONFIG",
    "DRIFTWARDEN_LOG_LEVEL",
    "DRIFTWARDEN_LOG_FORMAT",
    "DRIFTWARDEN_DB_PATH",
    "DRIFTWARDEN_GITHUB_TOKEN",
    "GITHUB_TOKEN",
    "DRIFTWARDEN_GITHUB_REPO",
    "DRIFTWARDEN_GITHUB_API_URL",
    "DRIFTWARDEN_LAWBOOK_PATH",
    "DRIFTWARDEN_TRANSITIONS_PATH",
    "DRIFTWARDEN_PLAYBOOKS_PATH",
    "DRIFTWARDEN_NOTIFY_WEBHOOK_URL",
    "DRIFTWARDEN_ENVIRONMENT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_minimal_file_uses_defaults(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, "config_version = 1\n"))
        assert config.logging.level == "INFO"
        assert config.github.token is None
        assert config.server.port == 8790
        assert config.remediation.step_max_attempts >= 1
        assert config.transitions_path is None

    def test_sections(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
[logging]
level = "debug"
format = "json"

[database]
path = "/tmp/dw.db"

[github]
token = "ghp_fromfile"
repo = "acme/api"

[remediation]
step_max_attempts = 5
""",
        )
        config = load_config(path)
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.db_path == Path("/tmp/dw.db")
        assert config.github.token.get_secret_value() == "ghp_fromfile"
        assert config.github.repo == "acme/api"
        assert config.remediation.step_max_attempts == 5

    def test_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigNotFoundError):
            load_config(tmp_path / "absent.toml")

    def test_bad_toml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(_write(tmp_path, "[logging\n"))

    @pytest.mark.parametrize(
        "text",
        [
            '[logging]\nlevel = "LOUD"\n',
            '[github]\nrepo = "no-slash"\n',
            "[server]\nport = 70000\n",
            "[remediation]\nstep_max_attempts = 0\n",
            '[runtime]\nenvironment = "moon"\n',
        ],
    )
    def test_invalid_values(self, tmp_path: Path, text: str) -> None:
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(_write(tmp_path, text))

    def test_env_file_location(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, '[github]\nrepo = "acme/web"\n')
        monkeypatch.setenv("DRIFTWARDEN_CONFIG", str(path))
        assert load_config().github.repo == "acme/web"


class TestEnvOverrides:
    def test_env_beats_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, '[logging]\nlevel = "INFO"\n')
        monkeypatch.setenv("DRIFTWARDEN_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("DRIFTWARDEN_DB_PATH", str(tmp_path / "env.db"))
        config = load_config(path)
        assert config.logging.level == "WARNING"
        assert config.db_path == tmp_path / "env.db"

    def test_github_token_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_generic")
        assert load_config(_write(tmp_path, "")).github.token.get_secret_value() == "ghp_generic"

        monkeypatch.setenv("DRIFTWARDEN_GITHUB_TOKEN", "ghp_specific")
        assert load_config(_write(tmp_path, "")).github.token.get_secret_value() == "ghp_specific"

    def test_paths(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DRIFTWARDEN_LAWBOOK_PATH", str(tmp_path / "lb.yaml"))
        monkeypatch.setenv("DRIFTWARDEN_TRANSITIONS_PATH", str(tmp_path / "t.yaml"))
        monkeypatch.setenv("DRIFTWARDEN_PLAYBOOKS_PATH", str(tmp_path / "pb.yaml"))
        config = load_config(_write(tmp_path, ""))
        assert config.lawbook_path == tmp_path / "lb.yaml"
        assert config.transitions_path == tmp_path / "t.yaml"
        assert config.playbooks_path == tmp_path / "pb.yaml"

    def test_token_not_in_repr(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secretvalue")
        config = load_config(_write(tmp_path, ""))
        assert "ghp_secretvalue" not in repr(config)


class TestDefaults:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = load_config_or_default(tmp_path / "absent.toml")
        assert isinstance(config, DriftwardenConfig)
        assert config.logging.level == "INFO"

    def test_defaults_still_take_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DRIFTWARDEN_ENVIRONMENT", "staging")
        assert load_config_or_default(tmp_path / "absent.toml").runtime.environment == "staging"

    def test_default_paths_under_data_dir(self, tmp_path: Path) -> None:
        config = DriftwardenConfig()
        assert config.db_path == tmp_path / "xdg" / "driftwarden" / "driftwarden.db"
        assert config.lawbook_path.parent == tmp_path / "xdg" / "driftwarden"


class TestSaveConfig:
    def test_round_trip_and_permissions(self, tmp_path: Path) -> None:
        path = save_config({"github": {"repo": "acme/api"}}, tmp_path / "sub" / "config.toml")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        config = load_config(path)
        assert config.github.repo == "acme/api"
        assert config.config_version == 1
        assert not (tmp_path / "sub" / "config.tmp").exists()

    def test_unserialisable_value(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot write"):
            save_config({"bad": object()}, tmp_path / "config.toml")
