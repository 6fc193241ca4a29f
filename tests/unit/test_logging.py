"""Unit tests for logging setup and the secret scrubber."""

from __future__ import annotations

import logging

from driftwarden.core.config import LoggingConfig
from driftwarden.core.logging import configure_from_config, configure_logging, scrub_secrets

TOKEN = "ghp_" + "a" * 36


def _ours() -> list[logging.Handler]:
    return [h for h in logging.getLogger().handlers if getattr(h, "_driftwarden_handler", False)]


class TestScrubSecrets:
    def test_redacts_string_values(self) -> None:
        event = {"event": "github_request_failed", "error": f"401 for token {TOKEN}", "status": 401}
        out = scrub_secrets(None, "error", event)
        assert TOKEN not in out["error"]
        assert "[REDACTED]" in out["error"]
        assert out["status"] == 401

    def test_long_values_not_truncated(self) -> None:
        text = "x" * 2000
        assert scrub_secrets(None, "info", {"detail": text})["detail"] == text


class TestConfigureLogging:
    def test_reconfigure_replaces_handler(self) -> None:
        configure_logging(level="DEBUG")
        configure_logging(level="ERROR", json_output=True)
        assert len(_ours()) == 1
        assert logging.getLogger().level == logging.ERROR

    def test_from_config(self) -> None:
        configure_from_config(LoggingConfig(level="info"))
        assert logging.getLogger().level == logging.INFO
        configure_from_config(LoggingConfig(level="info"), level_override="WARNING")
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
