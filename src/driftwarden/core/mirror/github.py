"""
GitHub mirror: reads issue/PR state and applies sync actions.

``GitHubClient`` is a thin httpx-based wrapper around the GitHub REST API
v3. ``GitHubMirror`` builds an ``ExternalSnapshot`` from it and applies
``ExternalAction`` objects through the idempotency ledger.

All methods are async. Authentication is via Bearer token (Personal Access
Token or GitHub App installation token).
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from driftwarden.core.constants import DEFAULT_GITHUB_API_URL, DEFAULT_GITHUB_TIMEOUT_SECONDS
from driftwarden.core.exceptions import ExternalActionError, ValidationError
from driftwarden.core.mirror.ledger import ActionLedger
from driftwarden.core.mirror.models import (
    ActionResult,
    EntityRef,
    ExternalAction,
    ExternalSnapshot,
)
from driftwarden.core.store.database import Database

logger = structlog.get_logger()

_ACCEPT = "application/vnd.github+json"
_VERSION = "2022-11-28"

_FAILED_CONCLUSIONS = frozenset({"failure", "timed_out", "cancelled", "action_required", "startup_failure"})
_PASSING_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})

# Action types GitHub can apply
GITHUB_ACTIONS = frozenset(
    {"ADD_LABELS", "REMOVE_LABELS", "CLOSE_ISSUE", "REOPEN_ISSUE", "COMMENT", "CREATE_ISSUE"}
)


class GitHubClient:
    """
    Async GitHub REST API client.

    Parameters
    ----------
    token:
        GitHub Personal Access Token (or installation token).
    api_url:
        API base URL (GitHub Enterprise installs differ).
    transport:
        Optional httpx transport; tests pass ``httpx.MockTransport``.
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout: float = DEFAULT_GITHUB_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": _ACCEPT, "X-GitHub-Api-Version": _VERSION}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=api_url,
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def get_issue(self, repo: str, number: int) -> dict[str, Any]:
        return await self._get(f"/repos/{repo}/issues/{number}")

    async def create_issue(
        self, repo: str, title: str, body: str = "", labels: list[str] | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        return await self._post(f"/repos/{repo}/issues", json=payload)

    async def set_issue_state(self, repo: str, number: int, state: str) -> dict[str, Any]:
        return await self._patch(f"/repos/{repo}/issues/{number}", json={"state": state})

    async def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]:
        return await self._post(f"/repos/{repo}/issues/{number}/labels", json={"labels": labels})

    async def remove_label(self, repo: str, number: int, label: str) -> None:
        """Remove one label. A label that is already gone is not an error."""
        try:
            await self._delete(f"/repos/{repo}/issues/{number}/labels/{label}")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 404:
                raise

    async def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]:
        return await self._post(f"/repos/{repo}/issues/{number}/comments", json={"body": body})

    # ------------------------------------------------------------------
    # Pull Requests
    # ------------------------------------------------------------------

    async def get_pr(self, repo: str, number: int) -> dict[str, Any]:
        """Fetch a single PR with full detail (including merged flag)."""
        return await self._get(f"/repos/{repo}/pulls/{number}")

    async def get_pr_checks(self, repo: str, ref: str) -> list[dict[str, Any]]:
        """Return all check runs for a commit SHA or branch ref."""
        data = await self._get(f"/repos/{repo}/commits/{ref}/check-runs", params={"per_page": 100})
        return data.get("check_runs", [])

    async def get_pr_reviews(self, repo: str, number: int) -> list[dict[str, Any]]:
        return await self._get(f"/repos/{repo}/pulls/{number}/reviews", params={"per_page": 100})

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def _post(self, path: str, json: dict[str, Any] | None = None) -> Any:
        resp = await self._client.post(path, json=json)
        resp.raise_for_status()
        return resp.json()

    async def _patch(self, path: str, json: dict[str, Any] | None = None) -> Any:
        resp = await self._client.patch(path, json=json)
        resp.raise_for_status()
        return resp.json()

    async def _delete(self, path: str) -> None:
        resp = await self._client.delete(path)
        if resp.status_code not in (200, 204):
            resp.raise_for_status()


# ---------------------------------------------------------------------------
# Derivations
# ---------------------------------------------------------------------------


def summarize_checks(check_runs: list[dict[str, Any]]) -> str | None:
    """success | failure | pending, or None when there are no checks."""
    if not check_runs:
        return None
    if any(c.get("conclusion") in _FAILED_CONCLUSIONS for c in check_runs):
        return "failure"
    if any(c.get("status") != "completed" for c in check_runs):
        return "pending"
    if all(c.get("conclusion") in _PASSING_CONCLUSIONS for c in check_runs):
        return "success"
    return "pending"


def summarize_reviews(reviews: list[dict[str, Any]]) -> str:
    """Latest review per reviewer wins; any changes_requested beats approvals."""
    latest: dict[str, str] = {}
    for review in reviews:
        user = (review.get("user") or {}).get("login", "")
        state = (review.get("state") or "").upper()
        if state in ("APPROVED", "CHANGES_REQUESTED", "DISMISSED"):
            latest[user] = state
    states = set(latest.values())
    if "CHANGES_REQUESTED" in states:
        return "changes_requested"
    if "APPROVED" in states:
        return "approved"
    return "pending"


def _linked_pr_number(issue: dict[str, Any], number: int) -> int | None:
    # The issues API serves PRs too; only those carry a pull_request key
    return number if issue.get("pull_request") else None


def _classify(exc: Exception) -> ExternalActionError:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        transient = status >= 500 or status == 429
        return ExternalActionError(f"GitHub returned HTTP {status}", transient=transient)
    return ExternalActionError(f"GitHub request failed: {exc}", transient=True)


# ---------------------------------------------------------------------------
# Mirror
# ---------------------------------------------------------------------------


class GitHubMirror:
    """``MirrorClient`` over the GitHub REST API."""

    def __init__(self, client: GitHubClient, db: Database) -> None:
        self._client = client
        self._ledger = ActionLedger(db)

    async def fetch_external_state(self, entity_ref: str) -> ExternalSnapshot:
        ref = EntityRef.parse(entity_ref)
        snapshot = ExternalSnapshot(entity_ref=str(ref))
        log = logger.bind(entity_ref=str(ref))

        try:
            issue = await self._client.get_issue(ref.repo, ref.number)
        except httpx.HTTPError as exc:
            log.warning("github_issue_fetch_failed", error=str(exc))
            snapshot.mark_unknown(
                "issue_state", "labels", "pr_number", "pr_state", "pr_merged", "check_state", "review_state"
            )
            return snapshot

        snapshot.issue_state = issue.get("state")
        snapshot.labels = sorted(lbl["name"] for lbl in issue.get("labels", []) if "name" in lbl)

        pr_number = _linked_pr_number(issue, ref.number)
        if pr_number is None:
            # No PR yet: PR-derived fields are absent rather than unknown
            return snapshot
        snapshot.pr_number = pr_number

        head_sha = ""
        try:
            pr = await self._client.get_pr(ref.repo, pr_number)
            snapshot.pr_state = pr.get("state")
            snapshot.pr_merged = bool(pr.get("merged"))
            head_sha = (pr.get("head") or {}).get("sha", "")
        except httpx.HTTPError as exc:
            log.warning("github_pr_fetch_failed", pr=pr_number, error=str(exc))
            snapshot.mark_unknown("pr_state", "pr_merged")

        if head_sha:
            try:
                snapshot.check_state = summarize_checks(
                    await self._client.get_pr_checks(ref.repo, head_sha)
                )
            except httpx.HTTPError as exc:
                log.warning("github_checks_fetch_failed", pr=pr_number, error=str(exc))
                snapshot.mark_unknown("check_state")
        else:
            snapshot.mark_unknown("check_state")

        try:
            snapshot.review_state = summarize_reviews(
                await self._client.get_pr_reviews(ref.repo, pr_number)
            )
        except httpx.HTTPError as exc:
            log.warning("github_reviews_fetch_failed", pr=pr_number, error=str(exc))
            snapshot.mark_unknown("review_state")

        return snapshot

    async def apply_external_action(
        self, action: ExternalAction, idempotency_key: str
    ) -> ActionResult:
        if action.action_type not in GITHUB_ACTIONS:
            raise ValidationError(f"GitHub cannot apply action {action.action_type!r}")

        async def perform() -> dict[str, Any]:
            try:
                return await self._perform(action)
            except httpx.HTTPError as exc:
                raise _classify(exc) from exc

        return await self._ledger.apply_once(action, idempotency_key, perform)

    async def _perform(self, action: ExternalAction) -> dict[str, Any]:
        params = action.params
        if action.action_type == "CREATE_ISSUE":
            created = await self._client.create_issue(
                action.target,
                title=str(params.get("title", "")),
                body=str(params.get("body", "")),
                labels=list(params.get("labels", [])),
            )
            return {"number": created.get("number"), "url": created.get("html_url")}

        ref = EntityRef.parse(action.target)
        if action.action_type == "ADD_LABELS":
            labels = sorted(params.get("labels", []))
            if labels:
                await self._client.add_labels(ref.repo, ref.number, labels)
            return {"added": labels}
        if action.action_type == "REMOVE_LABELS":
            labels = sorted(params.get("labels", []))
            for label in labels:
                await self._client.remove_label(ref.repo, ref.number, label)
            return {"removed": labels}
        if action.action_type in ("CLOSE_ISSUE", "REOPEN_ISSUE"):
            state = "closed" if action.action_type == "CLOSE_ISSUE" else "open"
            await self._client.set_issue_state(ref.repo, ref.number, state)
            return {"state": state}
        # COMMENT
        comment = await self._client.create_comment(ref.repo, ref.number, str(params.get("body", "")))
        return {"comment_id": comment.get("id")}
