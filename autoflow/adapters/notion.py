"""Notion adapter for databases and pages.

Data calls go through the official notion-client SDK, pinned to a fixed
Notion-Version so request and response shapes don't drift. Token grants use
Notion's OAuth endpoint (JSON body, HTTP Basic client authentication).
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx
from notion_client import APIErrorCode, APIResponseError, AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from autoflow.adapters.base import (
    ActionError,
    AdapterError,
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

NOTION_VERSION = "2022-06-28"
TOKEN_URL = "https://api.notion.com/v1/oauth/token"
AUTHORIZE_URL = "https://api.notion.com/v1/oauth/authorize"
QUERY_PAGE_SIZE = 25
MAX_TEXT_LENGTH = 2000  # Notion's limit per rich text object


def _paragraphs(text: str) -> list[dict[str, Any]]:
    """Build paragraph blocks for plain text, one per line."""
    blocks = []
    for line in text.splitlines() or [text]:
        chunks = [line[i : i + MAX_TEXT_LENGTH] for i in range(0, len(line), MAX_TEXT_LENGTH)]
        blocks.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {
                    "rich_text": [{"type": "text", "text": {"content": c}} for c in chunks]
                },
            }
        )
    return blocks


@AdapterRegistry.register
class NotionAdapter(BaseAdapter):
    """Adapter for Notion databases (trigger) and pages (actions)."""

    service_name: ClassVar[str] = "notion"
    display_name: ClassVar[str] = "Notion"
    trigger_events: ClassVar[list[str]] = ["new_database_item"]
    action_events: ClassVar[list[str]] = ["create_page", "append_to_page"]
    required_config: ClassVar[dict[str, list[str]]] = {
        "new_database_item": ["database_id"],
        "create_page": ["database_id", "title"],
        "append_to_page": ["page_id", "content"],
    }

    @asynccontextmanager
    async def _notion(self, credential: Credential) -> AsyncIterator[AsyncClient]:
        """Open a Notion SDK client bound to the credential's token."""
        async with self._http_client() as http:
            notion = AsyncClient(
                auth=credential.access_token,
                client=http,
                notion_version=NOTION_VERSION,
                timeout_ms=int(self._timeout * 1000),
            )
            # The SDK replaces the client headers with its own
            http.headers["User-Agent"] = self.user_agent
            yield notion

    def _translate(self, error: Exception, error_class: type[AdapterError]) -> AdapterError:
        """Map a notion-client exception onto the adapter error taxonomy."""
        if isinstance(error, APIResponseError):
            if error.code == APIErrorCode.Unauthorized:
                return AuthenticationError(str(error), service=self.service_name, status_code=401)
            if error.code == APIErrorCode.RateLimited:
                return RateLimitError(str(error), service=self.service_name, status_code=429)
            return error_class(str(error), service=self.service_name, status_code=error.status)
        if isinstance(error, RequestTimeoutError):
            return error_class("Notion request timed out", service=self.service_name, retriable=True)
        if isinstance(error, HTTPResponseError):
            return error_class(str(error), service=self.service_name, status_code=error.status)
        if isinstance(error, httpx.RequestError):
            return error_class(
                f"Notion request failed: {type(error).__name__}: {error}",
                service=self.service_name,
                retriable=True,
            )
        return error_class(str(error), service=self.service_name)

    def is_auth_error(self, error: BaseException) -> bool:
        if isinstance(error, APIResponseError):
            return error.code == APIErrorCode.Unauthorized
        return super().is_auth_error(error)

    # =========================================================================
    # Property extraction
    # =========================================================================

    def _extract_title(self, page: dict[str, Any]) -> str | None:
        """Extract the title from a Notion page."""
        for prop in page.get("properties", {}).values():
            if prop.get("type") == "title":
                title_list = prop.get("title", [])
                if title_list:
                    return "".join(t.get("plain_text", "") for t in title_list)
        return None

    def _extract_property_value(self, prop: dict[str, Any]) -> Any:
        """Extract a plain value from a Notion property."""
        prop_type = prop.get("type")

        if prop_type == "title":
            return "".join(t.get("plain_text", "") for t in prop.get("title", []))
        elif prop_type == "rich_text":
            return "".join(t.get("plain_text", "") for t in prop.get("rich_text", []))
        elif prop_type in ("number", "checkbox", "url", "email", "phone_number"):
            return prop.get(prop_type)
        elif prop_type in ("select", "status"):
            value = prop.get(prop_type)
            return value.get("name") if value else None
        elif prop_type == "multi_select":
            return [s.get("name") for s in prop.get("multi_select", [])]
        elif prop_type == "date":
            date = prop.get("date")
            return date.get("start") if date else None
        elif prop_type == "relation":
            return [r.get("id") for r in prop.get("relation", [])]
        elif prop_type == "people":
            return [p.get("name") or p.get("id") for p in prop.get("people", [])]
        elif prop_type in ("created_time", "last_edited_time"):
            return prop.get(prop_type)
        else:
            return None

    def _page_to_event(self, page: dict[str, Any]) -> ExternalEvent:
        """Convert a database row (page) to an ExternalEvent."""
        properties: dict[str, Any] = {}
        for name, prop in page.get("properties", {}).items():
            value = self._extract_property_value(prop)
            if value is not None:
                properties[name] = value

        title = self._extract_title(page) or ""
        text_values = [v for v in properties.values() if isinstance(v, str)]
        number = next(
            (v for v in properties.values() if isinstance(v, int | float) and not isinstance(v, bool)),
            None,
        )

        return ExternalEvent(
            id=page["id"],
            occurred_at=datetime.fromisoformat(page["created_time"]),
            payload={
                "id": page["id"],
                "title": title,
                "url": page.get("url"),
                "created_time": page.get("created_time"),
                "last_edited_time": page.get("last_edited_time"),
                "properties": properties,
            },
            text="\n".join(text_values),
            score=number,
            scope=page.get("parent", {}).get("database_id"),
        )

    # =========================================================================
    # Triggers
    # =========================================================================

    async def fetch_events(
        self, credential: Credential, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        """Query the newest rows of a database (newest first)."""
        if event_type != "new_database_item":
            raise FetchError(f"Unsupported Notion trigger: {event_type}", service=self.service_name)

        database_id = config["database_id"]
        async with self._notion(credential) as notion:
            try:
                response = await notion.request(
                    path=f"databases/{database_id}/query",
                    method="POST",
                    body={
                        "sorts": [{"timestamp": "created_time", "direction": "descending"}],
                        "page_size": QUERY_PAGE_SIZE,
                    },
                )
            except (APIResponseError, HTTPResponseError, RequestTimeoutError, httpx.RequestError) as e:
                raise self._translate(e, FetchError) from e

        return [self._page_to_event(page) for page in response.get("results", [])]

    # =========================================================================
    # Actions
    # =========================================================================

    async def perform_action(
        self,
        credential: Credential,
        event_type: str,
        config: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        """Create a database page or append content to an existing page."""
        config = self.render_config(config, context)

        async with self._notion(credential) as notion:
            try:
                if event_type == "create_page":
                    return await self._create_page(notion, config)
                elif event_type == "append_to_page":
                    return await self._append_to_page(notion, config)
            except (APIResponseError, HTTPResponseError, RequestTimeoutError, httpx.RequestError) as e:
                raise self._translate(e, ActionError) from e

        raise ActionError(f"Unsupported Notion action: {event_type}", service=self.service_name)

    async def _create_page(self, notion: AsyncClient, config: dict[str, Any]) -> ActionResult:
        title_property = config.get("title_property") or "Name"
        properties = dict(config.get("properties") or {})
        properties[title_property] = {"title": [{"text": {"content": str(config["title"])}}]}

        params: dict[str, Any] = {
            "parent": {"database_id": config["database_id"]},
            "properties": properties,
        }
        if config.get("content"):
            params["children"] = _paragraphs(str(config["content"]))

        page = await notion.pages.create(**params)
        logger.info(f"Created Notion page {page['id']}")
        return ActionResult(output={"id": page["id"], "url": page.get("url")}, external_id=page["id"])

    async def _append_to_page(self, notion: AsyncClient, config: dict[str, Any]) -> ActionResult:
        response = await notion.blocks.children.append(
            block_id=config["page_id"], children=_paragraphs(str(config["content"]))
        )
        block_ids = [block["id"] for block in response.get("results", [])]
        return ActionResult(output={"id": config["page_id"], "block_ids": block_ids})

    # =========================================================================
    # OAuth
    # =========================================================================

    async def _token_request(self, body: dict[str, str]) -> TokenGrant:
        async with self._http_client(headers={"Notion-Version": NOTION_VERSION}) as client:
            response = await self._request(
                client, "POST", TOKEN_URL, json=body, auth=self._client_auth()
            )

        if response.status_code in (400, 401):
            raise AuthenticationError(
                f"Notion token request rejected: {response.status_code} {response.text[:200]}",
                service=self.service_name,
                status_code=response.status_code,
            )
        self._raise_for_status(response)
        return TokenGrant.from_token_response(self._json(response))

    async def refresh_access_token(self, credential: Credential) -> TokenGrant:
        """Exchange the refresh token for a new access token."""
        if not credential.refresh_token:
            raise AuthenticationError("No Notion refresh token stored", service=self.service_name)

        logger.info("Refreshing Notion access token")
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        )

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        body = {"grant_type": "authorization_code", "code": code}
        redirect_uri = redirect_uri or self.settings.redirect_uri
        if redirect_uri:
            body["redirect_uri"] = redirect_uri
        return await self._token_request(body)

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        client_id, _ = self._client_auth()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "owner": "user",
            "state": state,
        }
        redirect_uri = redirect_uri or self.settings.redirect_uri
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return f"{AUTHORIZE_URL}?{urlencode(params)}"
