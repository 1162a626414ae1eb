"""Slack adapter (action sink only).

Slack's Web API answers most failures with HTTP 200 and an ``{"ok": false}``
envelope, so auth failures are classified from the ``error`` code rather than
the status line.
"""

import logging
from typing import Any, ClassVar
from urllib.parse import urlencode

from autoflow.adapters.base import (
    ActionError,
    AdapterRegistry,
    AuthenticationError,
    BaseAdapter,
    FetchError,
    RateLimitError,
)
from autoflow.models.credential import Credential, TokenGrant
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ActionResult, ExecutionContext

logger = logging.getLogger(__name__)

API_BASE_URL = "https://slack.com/api"
AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
OAUTH_SCOPES = "chat:write"

AUTH_ERROR_CODES = frozenset(
    {"invalid_auth", "not_authed", "token_expired", "token_revoked", "account_inactive"}
)


@AdapterRegistry.register
class SlackAdapter(BaseAdapter):
    """Adapter for posting Slack messages."""

    service_name: ClassVar[str] = "slack"
    display_name: ClassVar[str] = "Slack"
    trigger_events: ClassVar[list[str]] = []
    action_events: ClassVar[list[str]] = ["send_message"]
    required_config: ClassVar[dict[str, list[str]]] = {
        "send_message": ["channel", "text"],
    }

    def _check_envelope(self, body: dict[str, Any], error_class: type[ActionError]) -> None:
        """Raise if a Web API response body reports ``ok: false``."""
        if body.get("ok"):
            return

        code = body.get("error", "unknown_error")
        message = f"Slack API error: {code}"
        if code in AUTH_ERROR_CODES:
            raise AuthenticationError(message, service=self.service_name)
        if code == "ratelimited":
            raise RateLimitError(message, service=self.service_name)
        raise error_class(message, service=self.service_name)

    async def fetch_events(
        self, credential: Credential, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        raise FetchError("Slack has no pollable triggers", service=self.service_name)

    async def perform_action(
        self,
        credential: Credential,
        event_type: str,
        config: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        """Post a message to a channel."""
        if event_type != "send_message":
            raise ActionError(f"Unsupported Slack action: {event_type}", service=self.service_name)

        config = self.render_config(config, context)
        message = {"channel": config["channel"], "text": str(config["text"])}

        async with self._http_client(credential, base_url=API_BASE_URL) as client:
            response = await self._request(
                client,
                "POST",
                "/chat.postMessage",
                ActionError,
                json=message,
                headers={"Content-Type": "application/json; charset=utf-8"},
            )
        self._raise_for_status(response, ActionError)

        body = self._json(response, ActionError)
        self._check_envelope(body, ActionError)

        logger.info(f"Posted Slack message to {body.get('channel')}")
        return ActionResult(
            output={"channel": body.get("channel"), "ts": body.get("ts")},
            external_id=body.get("ts"),
        )

    # =========================================================================
    # OAuth
    # =========================================================================

    async def _oauth_access(self, form: dict[str, str]) -> TokenGrant:
        client_id, client_secret = self._client_auth()
        form = {**form, "client_id": client_id, "client_secret": client_secret}

        async with self._http_client(base_url=API_BASE_URL) as client:
            response = await self._request(client, "POST", "/oauth.v2.access", data=form)
        self._raise_for_status(response)

        body = self._json(response)
        if not body.get("ok"):
            raise AuthenticationError(
                f"Slack token request failed: {body.get('error', 'unknown_error')}",
                service=self.service_name,
            )
        return TokenGrant.from_token_response(body)

    async def refresh_access_token(self, credential: Credential) -> TokenGrant:
        """Rotate the access token (only issued when token rotation is enabled)."""
        if not credential.refresh_token:
            raise AuthenticationError("No Slack refresh token stored", service=self.service_name)

        logger.info("Refreshing Slack access token")
        return await self._oauth_access(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        )

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        form = {"code": code}
        redirect_uri = redirect_uri or self.settings.redirect_uri
        if redirect_uri:
            form["redirect_uri"] = redirect_uri
        return await self._oauth_access(form)

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        client_id, _ = self._client_auth()
        params = {"client_id": client_id, "scope": OAUTH_SCOPES, "state": state}
        redirect_uri = redirect_uri or self.settings.redirect_uri
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return f"{AUTHORIZE_URL}?{urlencode(params)}"
