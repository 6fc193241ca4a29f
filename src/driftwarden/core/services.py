"""
Process-level wiring.

``Services`` connects the database and builds every engine over it from one
``DriftwardenConfig``. The CLI and the HTTP app both go through it, so the
lawbook, transition table, evidence limits and retry budgets are the same
whichever surface a request arrives on.

Mirrors:
  - ``stored_drift`` compares against the last ``github_snapshot`` evidence
    fact and never touches the network.
  - ``drift`` uses the GitHub API when a token is configured and otherwise
    falls back to the stored snapshot.
"""

from __future__ import annotations

import structlog

from driftwarden.core.config import DriftwardenConfig
from driftwarden.core.drift.service import DriftService
from driftwarden.core.evidence.reader import EvidenceReader, SqliteEvidenceStore
from driftwarden.core.exceptions import ConfigError
from driftwarden.core.lifecycle.engine import LifecycleEngine
from driftwarden.core.lifecycle.transitions import BUILTIN_TABLE, load_transition_table
from driftwarden.core.mirror.github import GitHubClient, GitHubMirror
from driftwarden.core.mirror.models import MirrorClient
from driftwarden.core.mirror.stored import StoredSnapshotMirror
from driftwarden.core.policy.parser import LawbookProvider, PolicyParseError
from driftwarden.core.remediation.actions import ActionDispatcher, WebhookNotifier
from driftwarden.core.remediation.models import ActionType
from driftwarden.core.remediation.playbooks import PlaybookRegistry
from driftwarden.core.remediation.runner import PlaybookRunner
from driftwarden.core.store.database import Database

logger = structlog.get_logger()


class Services:
    def __init__(
        self,
        config: DriftwardenConfig,
        *,
        mirror: MirrorClient | None = None,
        dispatcher: ActionDispatcher | None = None,
    ) -> None:
        self.config = config
        self.db = Database(config.db_path)
        self.db.connect()

        self.lawbooks = LawbookProvider(config.lawbook_path)
        self.reader = EvidenceReader(
            SqliteEvidenceStore(self.db),
            timeout_seconds=config.evidence.timeout_seconds,
            max_retries=config.evidence.max_retries,
            backoff_seconds=config.evidence.backoff_seconds,
        )
        table = (
            load_transition_table(config.transitions_path)
            if config.transitions_path is not None
            else BUILTIN_TABLE
        )
        self.engine = LifecycleEngine(self.db, reader=self.reader, lawbooks=self.lawbooks, table=table)

        self.registry = PlaybookRegistry()
        if config.playbooks_path is not None:
            try:
                self.registry.load_file(config.playbooks_path)
            except PolicyParseError as exc:
                self.db.close()
                raise ConfigError(str(exc)) from exc

        if dispatcher is None:
            dispatcher = ActionDispatcher(self.db)
            if config.remediation.notify_webhook_url is not None:
                dispatcher.register(
                    ActionType.NOTIFY_SLACK,
                    WebhookNotifier(config.remediation.notify_webhook_url.get_secret_value()),
                )
        self.runner = PlaybookRunner(
            self.db,
            registry=self.registry,
            dispatcher=dispatcher,
            reader=self.reader,
            lawbooks=self.lawbooks,
            step_max_attempts=config.remediation.step_max_attempts,
            step_backoff_seconds=config.remediation.step_backoff_seconds,
            replay_wait_seconds=config.remediation.replay_wait_seconds,
        )

        self._github: GitHubClient | None = None
        stored = StoredSnapshotMirror(self.db)
        if mirror is None:
            token = config.github.token.get_secret_value() if config.github.token else ""
            if token:
                self._github = GitHubClient(
                    token,
                    api_url=config.github.api_url,
                    timeout=config.github.timeout_seconds,
                )
                mirror = GitHubMirror(self._github, self.db)
            else:
                mirror = stored
        self.drift = DriftService(self.db, mirror, self.engine, reader=self.reader)
        self.stored_drift = DriftService(self.db, stored, self.engine, reader=self.reader)

        logger.debug(
            "services_ready",
            db_path=str(config.db_path),
            github=self._github is not None,
            playbooks=len(self.registry.list_playbooks()),
        )

    async def aclose(self) -> None:
        if self._github is not None:
            await self._github.aclose()
            self._github = None
        self.db.close()

    def close(self) -> None:
        """Synchronous close for callers without a running loop."""
        self._github = None
        self.db.close()
