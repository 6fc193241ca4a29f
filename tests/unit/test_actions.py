"""Unit tests for the step action dispatcher and the webhook notifier."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from driftwarden.core.exceptions import ExternalActionError
from driftwarden.core.remediation.actions import ActionDispatcher, StepContext, WebhookNotifier, record_only
from driftwarden.core.remediation.models import ActionType, Incident
from driftwarden.core.store.database import Database


def _ctx(action_type: ActionType = ActionType.RESTART_SERVICE, key: str = "step:abc", **params: Any) -> StepContext:
    return StepContext(
        run_id="run-1",
        run_key="inc-1:restart-service:h",
        step_id="restart",
        action_type=action_type,
        idempotency_key=key,
        incident=Incident(id="i1", incident_key="inc-1", category="SERVICE_UNHEALTHY"),
        lawbook_version="1@abc",
        params=params,
    )


class TestRecordOnly:
    @pytest.mark.asyncio
    async def test_output(self) -> None:
        out = await record_only(_ctx())
        assert out["executed"] is True
        assert out["action_type"] == "RESTART_SERVICE"
        assert "inc-1" in out["message"]


class TestActionDispatcher:
    @pytest.mark.asyncio
    async def test_default_handler(self, db: Database) -> None:
        result = await ActionDispatcher(db).dispatch(_ctx())
        assert result.success
        assert result.applied
        assert result.output["executed"] is True

    @pytest.mark.asyncio
    async def test_registered_handler_runs_once_per_key(self, db: Database) -> None:
        calls: list[str] = []

        async def handler(ctx: StepContext) -> dict[str, Any]:
            calls.append(ctx.step_id)
            return {"restarted": True}

        dispatcher = ActionDispatcher(db)
        dispatcher.register("RESTART_SERVICE", handler)
        first = await dispatcher.dispatch(_ctx())
        second = await dispatcher.dispatch(_ctx())
        third = await dispatcher.dispatch(_ctx(key="step:other"))

        assert calls == ["restart", "restart"]
        assert first.applied
        assert not second.applied
        assert second.output == {"restarted": True}
        assert third.applied

    def test_handler_lookup(self, db: Database) -> None:
        dispatcher = ActionDispatcher(db)
        assert dispatcher.handler_for(ActionType.SCALE_UP) is record_only


class TestWebhookNotifier:
    @pytest.mark.asyncio
    async def test_posts_text(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="ok")

        notifier = WebhookNotifier("https://hooks.example/x", transport=httpx.MockTransport(handler))
        out = await notifier(_ctx(ActionType.NOTIFY_SLACK))
        assert out == {"step_id": "restart", "notified": True, "status_code": 200}
        body = json.loads(seen[0].content)
        assert "inc-1" in body["text"]
        assert "SERVICE_UNHEALTHY" in body["text"]

    @pytest.mark.asyncio
    async def test_custom_text(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        notifier = WebhookNotifier("https://hooks.example/x", transport=httpx.MockTransport(handler))
        await notifier(_ctx(ActionType.NOTIFY_SLACK, text="custom message"))
        assert seen == [{"text": "custom message"}]

    @pytest.mark.asyncio
    async def test_server_error_transient(self) -> None:
        notifier = WebhookNotifier(
            "https://hooks.example/x", transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )
        with pytest.raises(ExternalActionError) as info:
            await notifier(_ctx(ActionType.NOTIFY_SLACK))
        assert info.value.transient

    @pytest.mark.asyncio
    async def test_rate_limit_transient(self) -> None:
        notifier = WebhookNotifier(
            "https://hooks.example/x", transport=httpx.MockTransport(lambda r: httpx.Response(429))
        )
        with pytest.raises(ExternalActionError) as info:
            await notifier(_ctx(ActionType.NOTIFY_SLACK))
        assert info.value.transient

    @pytest.mark.asyncio
    async def test_client_error_permanent(self) -> None:
        notifier = WebhookNotifier(
            "https://hooks.example/x", transport=httpx.MockTransport(lambda r: httpx.Response(400))
        )
        with pytest.raises(ExternalActionError) as info:
            await notifier(_ctx(ActionType.NOTIFY_SLACK))
        assert not info.value.transient

    def test_empty_url(self) -> None:
        with pytest.raises(ValueError):
            WebhookNotifier("")
