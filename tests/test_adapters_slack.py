"""Tests for the Slack adapter wire contract."""

import json
from datetime import UTC, datetime
from urllib.parse import parse_qs

import httpx
import pytest

from autoflow.adapters.base import ActionError, AuthenticationError, FetchError, RateLimitError
from autoflow.adapters.slack import SlackAdapter
from autoflow.config import ProviderSettings
from autoflow.models import Credential, ExecutionContext, ExternalEvent

SETTINGS = ProviderSettings(client_id="cid", client_secret="csecret")

CREDENTIAL = Credential(user_id="user-1", service_name="slack", access_token="xoxb-1", refresh_token="xoxe-1")


def _adapter(handler) -> SlackAdapter:
    return SlackAdapter(SETTINGS, transport=httpx.MockTransport(handler))


def _context() -> ExecutionContext:
    context = ExecutionContext(
        event=ExternalEvent(
            id="p1",
            occurred_at=datetime(2024, 1, 1, tzinfo=UTC),
            payload={"title": "Project update"},
            text="Project update",
        )
    )
    context.outputs[0] = {"id": "page-1", "url": "https://notion.so/page-1"}
    return context


class TestSendMessage:
    """Tests for the send_message action."""

    @pytest.mark.asyncio
    async def test_posts_json_with_bearer_token(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "channel": "C1", "ts": "1700000000.000100"})

        result = await _adapter(handler).perform_action(
            CREDENTIAL,
            "send_message",
            {"channel": "#general", "text": "{{trigger.title}}: {{steps.0.url}}"},
            _context(),
        )

        request = seen[0]
        assert str(request.url) == "https://slack.com/api/chat.postMessage"
        assert request.headers["Authorization"] == "Bearer xoxb-1"
        assert request.headers["Content-Type"] == "application/json; charset=utf-8"
        assert json.loads(request.content) == {
            "channel": "#general",
            "text": "Project update: https://notion.so/page-1",
        }
        assert result.external_id == "1700000000.000100"
        assert result.output == {"channel": "C1", "ts": "1700000000.000100"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["invalid_auth", "token_expired", "token_revoked"])
    async def test_auth_error_codes(self, code: str):
        adapter = _adapter(lambda request: httpx.Response(200, json={"ok": False, "error": code}))

        with pytest.raises(AuthenticationError) as exc_info:
            await adapter.perform_action(CREDENTIAL, "send_message", {"channel": "C1", "text": "hi"}, _context())

        assert adapter.is_auth_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_other_error_code_is_action_error(self):
        adapter = _adapter(lambda request: httpx.Response(200, json={"ok": False, "error": "channel_not_found"}))

        with pytest.raises(ActionError) as exc_info:
            await adapter.perform_action(CREDENTIAL, "send_message", {"channel": "C1", "text": "hi"}, _context())

        assert "channel_not_found" in str(exc_info.value)
        assert not adapter.is_auth_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_ratelimited(self):
        adapter = _adapter(lambda request: httpx.Response(200, json={"ok": False, "error": "ratelimited"}))

        with pytest.raises(RateLimitError):
            await adapter.perform_action(CREDENTIAL, "send_message", {"channel": "C1", "text": "hi"}, _context())

    @pytest.mark.asyncio
    async def test_connection_failure_is_action_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ActionError) as exc_info:
            await _adapter(handler).perform_action(
                CREDENTIAL, "send_message", {"channel": "C1", "text": "hi"}, _context()
            )

        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_non_json_body_is_action_error(self):
        adapter = _adapter(lambda request: httpx.Response(200, text="upstream error"))

        with pytest.raises(ActionError, match="non-JSON"):
            await adapter.perform_action(CREDENTIAL, "send_message", {"channel": "C1", "text": "hi"}, _context())

    @pytest.mark.asyncio
    async def test_no_triggers(self):
        adapter = _adapter(lambda request: httpx.Response(200))

        assert adapter.trigger_events == []
        with pytest.raises(FetchError):
            await adapter.fetch_events(CREDENTIAL, "anything", {})


class TestOAuth:
    """Tests for Slack token grants."""

    @pytest.mark.asyncio
    async def test_refresh_is_form_encoded(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"ok": True, "access_token": "xoxb-2", "refresh_token": "xoxe-2", "expires_in": 43200},
            )

        grant = await _adapter(handler).refresh_access_token(CREDENTIAL)

        request = seen[0]
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        assert str(request.url) == "https://slack.com/api/oauth.v2.access"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert form == {
            "grant_type": "refresh_token",
            "refresh_token": "xoxe-1",
            "client_id": "cid",
            "client_secret": "csecret",
        }
        assert grant.access_token == "xoxb-2"
        assert grant.refresh_token == "xoxe-2"

    @pytest.mark.asyncio
    async def test_failed_exchange(self):
        adapter = _adapter(lambda request: httpx.Response(200, json={"ok": False, "error": "invalid_code"}))

        with pytest.raises(AuthenticationError):
            await adapter.exchange_code("bad")

    def test_authorization_url(self):
        url = _adapter(lambda request: httpx.Response(200)).authorization_url("state-1")

        assert url.startswith("https://slack.com/oauth/v2/authorize?")
        assert "scope=chat%3Awrite" in url
        assert "state=state-1" in url
