"""Unit tests for the GitHub client and mirror, using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from driftwarden.core.exceptions import ExternalActionError, ValidationError
from driftwarden.core.mirror.github import GitHubClient, GitHubMirror, summarize_checks, summarize_reviews
from driftwarden.core.mirror.models import ExternalAction
from driftwarden.core.store.database import Database


class FakeGitHub:
    """Routes requests to canned responses and records what was called."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}

    def add(self, method: str, path: str, status: int = 200, body=None) -> None:
        self.routes[(method, path)] = httpx.Response(status, json=body if body is not None else {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return route

    def client(self) -> GitHubClient:
        return GitHubClient("ghp_test", transport=httpx.MockTransport(self.handler))


def _pr_routes(gh: FakeGitHub) -> None:
    gh.add("GET", "/repos/acme/api/issues/7", body={
        "state": "open",
        "labels": [{"name": "status:verified"}, {"name": "bug"}],
        "pull_request": {"url": "..."},
    })
    gh.add("GET", "/repos/acme/api/pulls/7", body={"state": "open", "merged": False, "head": {"sha": "abc"}})
    gh.add("GET", "/repos/acme/api/commits/abc/check-runs", body={
        "check_runs": [{"status": "completed", "conclusion": "failure"}],
    })
    gh.add("GET", "/repos/acme/api/pulls/7/reviews", body=[
        {"user": {"login": "amy"}, "state": "APPROVED"},
    ])


class TestSummaries:
    def test_checks(self) -> None:
        assert summarize_checks([]) is None
        assert summarize_checks([{"status": "completed", "conclusion": "success"}]) == "success"
        assert summarize_checks([{"status": "in_progress", "conclusion": None}]) == "pending"
        assert summarize_checks([
            {"status": "completed", "conclusion": "success"},
            {"status": "completed", "conclusion": "timed_out"},
        ]) == "failure"
        assert summarize_checks([{"status": "completed", "conclusion": "skipped"}]) == "success"

    def test_reviews_latest_per_user(self) -> None:
        reviews = [
            {"user": {"login": "amy"}, "state": "CHANGES_REQUESTED"},
            {"user": {"login": "amy"}, "state": "APPROVED"},
            {"user": {"login": "bo"}, "state": "COMMENTED"},
        ]
        assert summarize_reviews(reviews) == "approved"

    def test_reviews_changes_requested_wins(self) -> None:
        reviews = [
            {"user": {"login": "amy"}, "state": "APPROVED"},
            {"user": {"login": "bo"}, "state": "CHANGES_REQUESTED"},
        ]
        assert summarize_reviews(reviews) == "changes_requested"

    def test_reviews_none(self) -> None:
        assert summarize_reviews([]) == "pending"


class TestGitHubClient:
    @pytest.mark.asyncio
    async def test_auth_headers(self) -> None:
        gh = FakeGitHub()
        gh.add("GET", "/repos/acme/api/issues/1", body={"state": "open"})
        async with gh.client() as client:
            assert await client.get_issue("acme/api", 1) == {"state": "open"}
        request = gh.requests[0]
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert request.headers["X-GitHub-Api-Version"] == "2022-11-28"

    @pytest.mark.asyncio
    async def test_remove_missing_label_tolerated(self) -> None:
        gh = FakeGitHub()
        async with gh.client() as client:
            await client.remove_label("acme/api", 1, "gone")


class TestFetchExternalState:
    @pytest.mark.asyncio
    async def test_pull_request(self, db: Database) -> None:
        gh = FakeGitHub()
        _pr_routes(gh)
        mirror = GitHubMirror(gh.client(), db)
        snap = await mirror.fetch_external_state("acme/api#7")
        assert snap.issue_state == "open"
        assert snap.labels == ["bug", "status:verified"]
        assert snap.pr_number == 7
        assert snap.pr_state == "open"
        assert snap.pr_merged is False
        assert snap.check_state == "failure"
        assert snap.review_state == "approved"
        assert snap.unknown_fields == []

    @pytest.mark.asyncio
    async def test_plain_issue_has_no_pr_fields(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("GET", "/repos/acme/api/issues/3", body={"state": "closed", "labels": []})
        snap = await GitHubMirror(gh.client(), db).fetch_external_state("acme/api#3")
        assert snap.issue_state == "closed"
        assert snap.pr_number is None
        assert snap.unknown_fields == []
        assert len(gh.requests) == 1

    @pytest.mark.asyncio
    async def test_issue_unreachable_marks_everything_unknown(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("GET", "/repos/acme/api/issues/7", status=502)
        snap = await GitHubMirror(gh.client(), db).fetch_external_state("acme/api#7")
        assert snap.issue_state is None
        assert len(snap.unknown_fields) == 7

    @pytest.mark.asyncio
    async def test_partial_failure(self, db: Database) -> None:
        gh = FakeGitHub()
        _pr_routes(gh)
        gh.add("GET", "/repos/acme/api/pulls/7/reviews", status=500)
        snap = await GitHubMirror(gh.client(), db).fetch_external_state("acme/api#7")
        assert snap.check_state == "failure"
        assert snap.review_state is None
        assert snap.unknown_fields == ["review_state"]

    @pytest.mark.asyncio
    async def test_bad_ref(self, db: Database) -> None:
        with pytest.raises(ValidationError):
            await GitHubMirror(FakeGitHub().client(), db).fetch_external_state("not-a-ref")


class TestApplyExternalAction:
    @pytest.mark.asyncio
    async def test_add_labels_once(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("POST", "/repos/acme/api/issues/7/labels", body=[])
        mirror = GitHubMirror(gh.client(), db)
        action = ExternalAction("ADD_LABELS", "acme/api#7", {"labels": ["status:b", "status:a"]})

        first = await mirror.apply_external_action(action, "drift:k1")
        second = await mirror.apply_external_action(action, "drift:k1")

        assert first.applied
        assert first.output == {"added": ["status:a", "status:b"]}
        assert not second.applied
        assert len(gh.requests) == 1
        assert json.loads(gh.requests[0].content) == {"labels": ["status:a", "status:b"]}

    @pytest.mark.asyncio
    async def test_close_issue(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("PATCH", "/repos/acme/api/issues/7", body={"state": "closed"})
        result = await GitHubMirror(gh.client(), db).apply_external_action(
            ExternalAction("CLOSE_ISSUE", "acme/api#7"), "k"
        )
        assert result.output == {"state": "closed"}
        assert json.loads(gh.requests[0].content) == {"state": "closed"}

    @pytest.mark.asyncio
    async def test_comment(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("POST", "/repos/acme/api/issues/7/comments", body={"id": 55})
        result = await GitHubMirror(gh.client(), db).apply_external_action(
            ExternalAction("COMMENT", "acme/api#7", {"body": "out of sync"}), "k"
        )
        assert result.output == {"comment_id": 55}

    @pytest.mark.asyncio
    async def test_create_issue_targets_repo(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("POST", "/repos/acme/api/issues", body={"number": 9, "html_url": "https://x/9"})
        result = await GitHubMirror(gh.client(), db).apply_external_action(
            ExternalAction("CREATE_ISSUE", "acme/api", {"title": "Incident"}), "k"
        )
        assert result.output == {"number": 9, "url": "https://x/9"}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("POST", "/repos/acme/api/issues/7/comments", status=503)
        with pytest.raises(ExternalActionError) as info:
            await GitHubMirror(gh.client(), db).apply_external_action(
                ExternalAction("COMMENT", "acme/api#7", {"body": "x"}), "k"
            )
        assert info.value.transient

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, db: Database) -> None:
        gh = FakeGitHub()
        gh.add("POST", "/repos/acme/api/issues/7/comments", status=422)
        with pytest.raises(ExternalActionError) as info:
            await GitHubMirror(gh.client(), db).apply_external_action(
                ExternalAction("COMMENT", "acme/api#7", {"body": "x"}), "k"
            )
        assert not info.value.transient

    @pytest.mark.asyncio
    async def test_unsupported_action(self, db: Database) -> None:
        with pytest.raises(ValidationError):
            await GitHubMirror(FakeGitHub().client(), db).apply_external_action(
                ExternalAction("RESTART_SERVICE", "acme/api#7"), "k"
            )
