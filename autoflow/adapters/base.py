"""Base adapter interface for external services.

Every service the engine talks to is wrapped in an adapter that provides a
consistent way to:
1. Fetch new events from a trigger source (a pure read)
2. Perform one effectful action given the accumulated execution context
3. Classify failures as credential-related or not
4. Run the provider's OAuth2 token grants (refresh, authorization code)

Adapters are stateless apart from their injected configuration. Tokens are
passed in on every call and all mutable state (credentials, dedup records)
lives in the stores, so token refresh, retry and dedup are handled once, by
the engine, for every service.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from autoflow.config import DEFAULT_USER_AGENT, ProviderSettings, Settings
from autoflow.errors import WorkflowValidationError
from autoflow.models.credential import Credential, TokenGrant
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ActionResult, ExecutionContext
from autoflow.models.workflow import StepType

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class AdapterError(Exception):
    """Base exception for adapter errors."""

    kind = "adapter_error"

    def __init__(
        self,
        message: str,
        service: str | None = None,
        retriable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.service = service
        self.retriable = retriable
        self.status_code = status_code


class AuthenticationError(AdapterError):
    """Authentication failed (token expired, revoked or invalid)."""

    kind = "auth_error"


class FetchError(AdapterError):
    """Reading events from a trigger source failed."""

    kind = "fetch_error"


class ActionError(AdapterError):
    """An action was rejected by the provider or could not be sent."""

    kind = "action_error"


class RateLimitError(AdapterError):
    """Rate limit exceeded."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: int | None = None, **kwargs: Any):
        super().__init__(message, retriable=True, **kwargs)
        self.retry_after = retry_after


class BaseAdapter(ABC):
    """Abstract base class for service adapters.

    Example implementation:
        @AdapterRegistry.register
        class ExampleAdapter(BaseAdapter):
            service_name = "example"
            display_name = "Example"
            trigger_events = ["new_item"]
            action_events = ["create_item"]

            async def fetch_events(self, credential, event_type, config):
                async with self._http_client(credential) as client:
                    response = await self._request(
                        client, "GET", "https://api.example.com/items", FetchError
                    )
                self._raise_for_status(response, FetchError)
                return [self._to_event(item) for item in self._json(response, FetchError)["items"]]
    """

    # Class-level configuration
    service_name: ClassVar[str]  # Unique service identifier (e.g., "reddit")
    display_name: ClassVar[str]
    trigger_events: ClassVar[list[str]] = []
    action_events: ClassVar[list[str]] = []

    # Configuration keys each event type cannot run without
    required_config: ClassVar[dict[str, list[str]]] = {}

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            settings: OAuth client registration for this provider
            user_agent: Client identifier sent on every request
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a mock here)
        """
        self.settings = settings or ProviderSettings.model_construct()
        self.user_agent = user_agent
        self._timeout = timeout
        self._transport = transport

    # =========================================================================
    # Abstract Methods (must implement)
    # =========================================================================

    @abstractmethod
    async def fetch_events(
        self, credential: Credential, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        """Fetch the current window of events from a trigger source.

        Must not change anything on the remote service. Events are returned in
        the provider's order; deduplication is not the adapter's job.

        Raises:
            AuthenticationError: If the token is rejected
            FetchError: For any other provider failure
        """
        pass

    @abstractmethod
    async def perform_action(
        self,
        credential: Credential,
        event_type: str,
        config: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        """Execute one effectful operation.

        Raises:
            AuthenticationError: If the token is rejected
            ActionError: For any other provider failure
        """
        pass

    @abstractmethod
    async def refresh_access_token(self, credential: Credential) -> TokenGrant:
        """Exchange the credential's refresh token for a new access token.

        Raises:
            AuthenticationError: If the provider rejects the refresh token
        """
        pass

    # =========================================================================
    # Optional Methods (can override)
    # =========================================================================

    def is_auth_error(self, error: BaseException) -> bool:
        """Check whether a failure means the access token is expired or invalid."""
        if isinstance(error, AuthenticationError):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code == 401
        return False

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Run the authorization-code grant after the user approves access."""
        raise NotImplementedError(f"{self.service_name} adapter does not support OAuth connect")

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Build the provider's consent URL."""
        raise NotImplementedError(f"{self.service_name} adapter does not support OAuth connect")

    def validate_config(self, step_type: StepType, event_type: str, config: dict[str, Any]) -> None:
        """Reject step configuration the adapter cannot run.

        Raises:
            WorkflowValidationError: If required keys are missing
        """
        missing = [
            key
            for key in self.required_config.get(event_type, [])
            if config.get(key) in (None, "")
        ]
        if missing:
            raise WorkflowValidationError(
                f"{self.service_name}.{event_type} requires configuration: {', '.join(missing)}",
                service=self.service_name,
            )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def supports(self, step_type: StepType, event_type: str) -> bool:
        """Check if this adapter handles the event type for the given role."""
        if step_type == StepType.TRIGGER:
            return event_type in self.trigger_events
        return event_type in self.action_events

    def _http_client(
        self, credential: Credential | None = None, **kwargs: Any
    ) -> httpx.AsyncClient:
        """Create an HTTP client carrying the client identifier (and bearer token)."""
        headers = {"User-Agent": self.user_agent}
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.access_token}"
        headers.update(kwargs.pop("headers", {}))
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._timeout,
            headers=headers,
            **kwargs,
        )

    def _client_auth(self) -> tuple[str, str]:
        """HTTP Basic credentials of the registered OAuth client."""
        if not self.settings.is_configured:
            raise AuthenticationError(
                f"{self.display_name} OAuth client is not configured",
                service=self.service_name,
            )
        return self.settings.client_id, self.settings.client_secret  # type: ignore[return-value]

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        error_class: type[AdapterError] = AdapterError,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request; transport failures become retriable adapter errors."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise error_class(
                f"{self.display_name} request failed: {type(e).__name__}: {e}",
                service=self.service_name,
                retriable=True,
            ) from e

    def _json(
        self, response: httpx.Response, error_class: type[AdapterError] = AdapterError
    ) -> Any:
        """Decode a response body that must be JSON."""
        try:
            return response.json()
        except ValueError as e:
            raise error_class(
                f"{self.display_name} returned a non-JSON body: "
                f"{response.status_code} {response.text[:200]}",
                service=self.service_name,
                status_code=response.status_code,
            ) from e

    def _raise_for_status(
        self, response: httpx.Response, error_class: type[AdapterError] = AdapterError
    ) -> None:
        """Translate an HTTP error response into the adapter error taxonomy."""
        if response.is_success:
            return

        status = response.status_code
        detail = (
            f"{self.display_name} API error: {status} {response.reason_phrase} - "
            f"{response.text[:500]}"
        )

        if status == 401:
            raise AuthenticationError(detail, service=self.service_name, status_code=status)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                detail,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                service=self.service_name,
                status_code=status,
            )
        raise error_class(
            detail,
            service=self.service_name,
            retriable=status >= 500,
            status_code=status,
        )

    @staticmethod
    def render_config(config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        """Substitute ``{{trigger.field}}`` / ``{{steps.N.field}}`` placeholders.

        A value that is exactly one placeholder keeps the referenced value's
        type; placeholders embedded in longer strings are stringified. Unknown
        references render as empty.
        """
        variables = context.variables()

        def lookup(path: str) -> Any:
            value: Any = variables
            for part in path.split("."):
                if isinstance(value, dict) and part in value:
                    value = value[part]
                else:
                    return None
            return value

        def render(value: Any) -> Any:
            if isinstance(value, str):
                whole = _PLACEHOLDER.fullmatch(value.strip())
                if whole:
                    return lookup(whole.group(1))
                return _PLACEHOLDER.sub(lambda m: _as_text(lookup(m.group(1))), value)
            if isinstance(value, dict):
                return {k: render(v) for k, v in value.items()}
            if isinstance(value, list):
                return [render(v) for v in value]
            return value

        return {key: render(value) for key, value in config.items()}


class AdapterRegistry:
    """Registry of available adapter classes.

    Use this to look up adapters by service name and to build the adapter set
    an engine runs with.
    """

    _adapters: dict[str, type[BaseAdapter]] = {}

    @classmethod
    def register(cls, adapter_class: type[BaseAdapter]) -> type[BaseAdapter]:
        """Register an adapter class.

        Can be used as a decorator:
            @AdapterRegistry.register
            class RedditAdapter(BaseAdapter):
                service_name = "reddit"
        """
        cls._adapters[adapter_class.service_name] = adapter_class
        return adapter_class

    @classmethod
    def get(cls, service_name: str) -> type[BaseAdapter] | None:
        """Get adapter class by service name."""
        return cls._adapters.get(service_name)

    @classmethod
    def list_services(cls) -> list[str]:
        """List registered service names."""
        return list(cls._adapters.keys())

    @classmethod
    def list_adapters(cls) -> list[type[BaseAdapter]]:
        """List all registered adapter classes."""
        return list(cls._adapters.values())

    @classmethod
    def create_all(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> dict[str, BaseAdapter]:
        """Instantiate every registered adapter with its injected configuration."""
        return {
            name: adapter_class(
                settings.provider(name),
                user_agent=settings.user_agent,
                timeout=settings.request_timeout_seconds,
                transport=transport,
            )
            for name, adapter_class in cls._adapters.items()
        }
