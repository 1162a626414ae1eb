"""Reddit adapter: new-post trigger plus post, comment and vote actions.

Talks to Reddit's OAuth API directly. Every request carries the client
identifier in ``User-Agent`` (Reddit throttles generic agents), token grants
are form-encoded with HTTP Basic client authentication, and ``/api/`` writes
are form-encoded as well.
"""

import logging
from datetime import UTC, datetime
from typing import Any, ClassVar
from urllib.parse import quote, urlencode

import httpx

from autoflow.adapters.base import (
    ActionError,
    AdapterError,
    AdapterRegistry,
    AuthenticationError,
    BaseAdapter,
    FetchError,
)
from autoflow.models.credential import Credential, TokenGrant
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ActionResult, ExecutionContext

logger = logging.getLogger(__name__)

API_BASE_URL = "https://oauth.reddit.com"
TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
AUTHORIZE_URL = "https://www.reddit.com/api/v1/authorize"
OAUTH_SCOPES = "identity submit read vote"
NEW_POSTS_LIMIT = 25


def _fullname(post_id: str) -> str:
    """Reddit "fullname" for a link (``t3_`` prefix)."""
    post_id = str(post_id)
    return post_id if post_id.startswith("t3_") else f"t3_{post_id}"


@AdapterRegistry.register
class RedditAdapter(BaseAdapter):
    """Adapter for Reddit subreddits and posts."""

    service_name: ClassVar[str] = "reddit"
    display_name: ClassVar[str] = "Reddit"
    trigger_events: ClassVar[list[str]] = ["new_post"]
    action_events: ClassVar[list[str]] = ["create_post", "comment", "vote"]
    required_config: ClassVar[dict[str, list[str]]] = {
        "new_post": ["subreddit"],
        "create_post": ["subreddit", "title"],
        "comment": ["post_id", "comment_text"],
        "vote": ["post_id"],
    }

    @staticmethod
    def _is_invalid_token(response: httpx.Response) -> bool:
        """Reddit answers some expired tokens with a 403 and a bearer challenge."""
        challenge = response.headers.get("WWW-Authenticate", "")
        return response.status_code == 403 and "invalid_token" in challenge

    def is_auth_error(self, error: BaseException) -> bool:
        if isinstance(error, httpx.HTTPStatusError) and self._is_invalid_token(error.response):
            return True
        return super().is_auth_error(error)

    def _raise_for_status(
        self, response: httpx.Response, error_class: type[AdapterError] = AdapterError
    ) -> None:
        if self._is_invalid_token(response):
            raise AuthenticationError(
                f"Reddit rejected the access token: {response.headers['WWW-Authenticate']}",
                service=self.service_name,
                status_code=response.status_code,
            )
        super()._raise_for_status(response, error_class)

    # =========================================================================
    # Triggers
    # =========================================================================

    async def fetch_events(
        self, credential: Credential, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        """Fetch the newest posts of a subreddit (newest first)."""
        if event_type != "new_post":
            raise FetchError(f"Unsupported Reddit trigger: {event_type}", service=self.service_name)

        subreddit = str(config["subreddit"]).strip().removeprefix("r/")
        logger.info(f"Getting new posts for subreddit: {subreddit}")

        async with self._http_client(credential, base_url=API_BASE_URL) as client:
            response = await self._request(
                client,
                "GET",
                f"/r/{subreddit}/new.json",
                FetchError,
                params={"limit": NEW_POSTS_LIMIT},
            )
        self._raise_for_status(response, FetchError)

        children = self._json(response, FetchError).get("data", {}).get("children", [])
        return [self._post_to_event(child["data"]) for child in children]

    def _post_to_event(self, data: dict[str, Any]) -> ExternalEvent:
        """Convert a Reddit listing child to an ExternalEvent."""
        created = datetime.fromtimestamp(data.get("created_utc", 0), tz=UTC)

        if data.get("is_self"):
            post_type = "text"
        elif data.get("post_hint") == "image":
            post_type = "image"
        else:
            post_type = "link"

        post = {
            "id": data["id"],
            "title": data.get("title", ""),
            "content": data.get("selftext") or "",
            "url": data.get("url"),
            "author": data.get("author"),
            "subreddit": data.get("subreddit"),
            "score": data.get("score", 0),
            "created_at": created.isoformat(),
            "permalink": f"https://reddit.com{data.get('permalink', '')}",
            "post_type": post_type,
        }

        return ExternalEvent(
            id=post["id"],
            occurred_at=created,
            payload=post,
            text=f"{post['title']}\n{post['content']}",
            score=post["score"],
            scope=post["subreddit"],
        )

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
        """Submit a post, comment on a post, or vote."""
        config = self.render_config(config, context)

        if event_type == "create_post":
            return await self._create_post(credential, config)
        elif event_type == "comment":
            return await self._comment(credential, config)
        elif event_type == "vote":
            return await self._vote(credential, config)

        raise ActionError(f"Unsupported Reddit action: {event_type}", service=self.service_name)

    async def _post_form(
        self, credential: Credential, endpoint: str, form: dict[str, Any]
    ) -> dict[str, Any]:
        """POST a form-encoded ``/api/`` request and check Reddit's error envelope."""
        async with self._http_client(credential, base_url=API_BASE_URL) as client:
            response = await self._request(client, "POST", endpoint, ActionError, data=form)
        self._raise_for_status(response, ActionError)

        body = self._json(response, ActionError) if response.content else {}
        errors = body.get("json", {}).get("errors") if isinstance(body, dict) else None
        if errors:
            raise ActionError(f"Reddit rejected {endpoint}: {errors}", service=self.service_name)
        return body

    async def _create_post(self, credential: Credential, config: dict[str, Any]) -> ActionResult:
        logger.info(f"Creating post in subreddit: {config['subreddit']}")

        form: dict[str, Any] = {
            "sr": config["subreddit"],
            "kind": "link" if config.get("url") else "self",
            "title": config["title"],
            "api_type": "json",
        }
        if config.get("url"):
            form["url"] = config["url"]
        else:
            form["text"] = config.get("text") or ""

        body = await self._post_form(credential, "/api/submit", form)
        data = body.get("json", {}).get("data", {})
        return ActionResult(
            output={"id": data.get("id"), "name": data.get("name"), "url": data.get("url")},
            external_id=data.get("id"),
        )

    async def _comment(self, credential: Credential, config: dict[str, Any]) -> ActionResult:
        form = {
            "thing_id": _fullname(config["post_id"]),
            "text": config["comment_text"],
            "api_type": "json",
        }

        body = await self._post_form(credential, "/api/comment", form)
        things = body.get("json", {}).get("data", {}).get("things", [])
        comment = things[0].get("data", {}) if things else {}
        return ActionResult(
            output={"id": comment.get("id"), "name": comment.get("name")},
            external_id=comment.get("id"),
        )

    async def _vote(self, credential: Credential, config: dict[str, Any]) -> ActionResult:
        direction = int(config.get("vote_direction", 1))
        if direction not in (-1, 0, 1):
            raise ActionError(
                f"vote_direction must be -1, 0 or 1, got {direction}", service=self.service_name
            )

        fullname = _fullname(config["post_id"])
        await self._post_form(credential, "/api/vote", {"id": fullname, "dir": direction})
        return ActionResult(output={"id": fullname, "direction": direction})

    # =========================================================================
    # OAuth
    # =========================================================================

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        """POST to the token endpoint with client Basic auth."""
        async with self._http_client() as client:
            response = await self._request(
                client, "POST", TOKEN_URL, data=form, auth=self._client_auth()
            )

        if response.status_code in (400, 401):
            raise AuthenticationError(
                f"Reddit token request rejected: {response.status_code} {response.text[:200]}",
                service=self.service_name,
                status_code=response.status_code,
            )
        self._raise_for_status(response)

        data = self._json(response)
        # Reddit reports some grant failures with a 200 and an error body
        if "error" in data or "access_token" not in data:
            raise AuthenticationError(
                f"Reddit token request failed: {data.get('error', 'no access_token')}",
                service=self.service_name,
            )
        return TokenGrant.from_token_response(data)

    async def refresh_access_token(self, credential: Credential) -> TokenGrant:
        """Exchange the refresh token for a new access token."""
        if not credential.refresh_token:
            raise AuthenticationError("No Reddit refresh token stored", service=self.service_name)

        logger.info("Refreshing Reddit access token")
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        )

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        redirect_uri = redirect_uri or self.settings.redirect_uri
        if not redirect_uri:
            raise AuthenticationError("Reddit redirect URI is not configured", service=self.service_name)

        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        )

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Build the consent URL (permanent duration, so a refresh token is issued)."""
        client_id, _ = self._client_auth()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "state": state,
            "redirect_uri": redirect_uri or self.settings.redirect_uri or "",
            "duration": "permanent",
            "scope": OAUTH_SCOPES,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params, quote_via=quote)}"
