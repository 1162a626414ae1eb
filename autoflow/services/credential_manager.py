"""Credential lifecycle: wraps adapter calls with refresh-once-and-retry.

Policy for every call made through ``invoke``:
1. Load the (user, service) credential, or fail with CredentialNotFoundError
2. Run the operation with the current access token
3. If it fails and the adapter classifies the failure as an auth error,
   refresh the token, persist it, and run the operation exactly once more
4. Anything else (a non-auth failure, or a failure of the retry) propagates
   unmodified

Each external call is bounded by the configured timeout. A timeout is a
non-auth failure and is never retried here.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from autoflow.adapters.base import BaseAdapter
from autoflow.db.credential_store import CredentialStore
from autoflow.errors import CredentialNotFoundError, OperationTimeoutError, UnknownServiceError
from autoflow.models.credential import Credential
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ActionResult, ExecutionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

CredentialOperation = Callable[[Credential], Awaitable[T]]


class CredentialLifecycleManager:
    """Runs adapter operations with a user's credential."""

    def __init__(
        self,
        adapters: Mapping[str, BaseAdapter],
        credential_store: CredentialStore,
        timeout: float = 30.0,
    ) -> None:
        self._adapters = adapters
        self._credentials = credential_store
        self._timeout = timeout
        self.refresh_count = 0

    def adapter(self, service_name: str) -> BaseAdapter:
        """Get the adapter for a service."""
        adapter = self._adapters.get(service_name)
        if adapter is None:
            raise UnknownServiceError(f"No adapter registered for '{service_name}'", service=service_name)
        return adapter

    async def bounded(self, awaitable: Awaitable[T], description: str) -> T:
        """Await an external call under the timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as e:
            raise OperationTimeoutError(f"{description} timed out after {self._timeout}s") from e

    async def invoke(
        self,
        user_id: str,
        service_name: str,
        op: CredentialOperation[T],
        description: str = "operation",
    ) -> T:
        """Run ``op`` with the user's credential, refreshing once on auth failure.

        Args:
            user_id: Owner of the credential
            service_name: Service the operation talks to
            op: Async callable receiving the credential
            description: Label used in logs and timeout messages

        Returns:
            Whatever ``op`` returns

        Raises:
            CredentialNotFoundError: If the user has not connected the service
            OperationTimeoutError: If a call exceeds the timeout
            Exception: The operation's (or the retry's) failure, unmodified
        """
        adapter = self.adapter(service_name)

        credential = await self._credentials.get(user_id, service_name)
        if credential is None:
            raise CredentialNotFoundError(user_id, service_name)

        label = f"{service_name} {description}"
        try:
            return await self.bounded(op(credential), label)
        except OperationTimeoutError:
            raise
        except Exception as error:
            if not adapter.is_auth_error(error) or not credential.refresh_token:
                raise
            logger.info(f"{label} rejected the access token for user {user_id}, refreshing")

        self.refresh_count += 1
        grant = await self.bounded(
            adapter.refresh_access_token(credential), f"{service_name} token refresh"
        )
        credential = await self._credentials.update_tokens(credential, grant)
        logger.info(f"Refreshed {service_name} access token for user {user_id}, retrying {description}")

        return await self.bounded(op(credential), label)

    # =========================================================================
    # Adapter shortcuts
    # =========================================================================

    async def fetch_events(
        self, user_id: str, service_name: str, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        """Fetch trigger events through the lifecycle policy."""
        adapter = self.adapter(service_name)
        return await self.invoke(
            user_id,
            service_name,
            lambda credential: adapter.fetch_events(credential, event_type, config),
            description=f"fetch {event_type}",
        )

    async def perform_action(
        self,
        user_id: str,
        service_name: str,
        event_type: str,
        config: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        """Perform an action through the lifecycle policy."""
        adapter = self.adapter(service_name)
        return await self.invoke(
            user_id,
            service_name,
            lambda credential: adapter.perform_action(credential, event_type, config, context),
            description=f"action {event_type}",
        )
