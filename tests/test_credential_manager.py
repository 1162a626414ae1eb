"""Tests for the credential lifecycle (refresh once, retry once)."""

import asyncio

import pytest

from autoflow.adapters.base import AuthenticationError, FetchError
from autoflow.db.credential_store import CredentialStore
from autoflow.errors import CredentialNotFoundError, OperationTimeoutError, UnknownServiceError
from autoflow.models import Credential
from autoflow.services.credential_manager import CredentialLifecycleManager


@pytest.fixture
async def store(cipher) -> CredentialStore:
    store = CredentialStore(cipher)
    await store.upsert(
        Credential(user_id="user-1", service_name="fake", access_token="stale", refresh_token="refresh")
    )
    return store


@pytest.fixture
def lifecycle(fake_adapter, store) -> CredentialLifecycleManager:
    return CredentialLifecycleManager({"fake": fake_adapter}, store, timeout=1.0)


class TestInvoke:
    """Tests for CredentialLifecycleManager.invoke."""

    @pytest.mark.asyncio
    async def test_success_without_refresh(self, lifecycle, fake_adapter):
        fake_adapter.events = []

        events = await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert events == []
        assert fake_adapter.refreshes == 0
        assert lifecycle.refresh_count == 0

    @pytest.mark.asyncio
    async def test_auth_error_refreshes_and_retries(self, lifecycle, fake_adapter, store, make_event):
        """One refresh, one retry with the new token, result returned to the caller."""
        fake_adapter.events = [make_event("e1", "hello")]
        fake_adapter.fetch_errors = [AuthenticationError("token expired", service="fake")]

        events = await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert [e.id for e in events] == ["e1"]
        assert fake_adapter.refreshes == 1
        assert lifecycle.refresh_count == 1
        assert fake_adapter.tokens_seen == ["stale", "refreshed-1"]

        stored = await store.get("user-1", "fake")
        assert stored.access_token == "refreshed-1"
        assert stored.refresh_token == "refresh"

    @pytest.mark.asyncio
    async def test_second_failure_surfaces_verbatim(self, lifecycle, fake_adapter):
        second = AuthenticationError("still expired", service="fake")
        fake_adapter.fetch_errors = [AuthenticationError("expired", service="fake"), second]

        with pytest.raises(AuthenticationError) as exc_info:
            await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert exc_info.value is second
        assert fake_adapter.refreshes == 1
        assert fake_adapter.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_non_auth_error_not_retried(self, lifecycle, fake_adapter):
        error = FetchError("server down", service="fake", retriable=True)
        fake_adapter.fetch_errors = [error]

        with pytest.raises(FetchError) as exc_info:
            await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert exc_info.value is error
        assert fake_adapter.refreshes == 0
        assert fake_adapter.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_propagates(self, lifecycle, fake_adapter):
        fake_adapter.fetch_errors = [AuthenticationError("expired", service="fake")]
        fake_adapter.refresh_error = AuthenticationError("invalid_grant", service="fake")

        with pytest.raises(AuthenticationError, match="invalid_grant"):
            await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert fake_adapter.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, lifecycle, fake_adapter, store):
        await store.upsert(Credential(user_id="user-1", service_name="fake", access_token="stale"))
        fake_adapter.fetch_errors = [AuthenticationError("expired", service="fake")]

        with pytest.raises(AuthenticationError):
            await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert fake_adapter.refreshes == 0

    @pytest.mark.asyncio
    async def test_missing_credential(self, lifecycle, fake_adapter):
        with pytest.raises(CredentialNotFoundError) as exc_info:
            await lifecycle.fetch_events("someone-else", "fake", "new_item", {})

        assert exc_info.value.kind == "credential_not_found"
        assert fake_adapter.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_service(self, lifecycle):
        with pytest.raises(UnknownServiceError):
            await lifecycle.fetch_events("user-1", "myspace", "new_item", {})

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self, fake_adapter, store):
        lifecycle = CredentialLifecycleManager({"fake": fake_adapter}, store, timeout=0.05)
        fake_adapter.fetch_gate = asyncio.Event()

        with pytest.raises(OperationTimeoutError) as exc_info:
            await lifecycle.fetch_events("user-1", "fake", "new_item", {})

        assert exc_info.value.kind == "timeout"
        assert fake_adapter.fetch_calls == 1
        assert fake_adapter.refreshes == 0
