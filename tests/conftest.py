"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from typing import Any, ClassVar

import pytest
from httpx import ASGITransport, AsyncClient

from autoflow.adapters.base import ActionError, BaseAdapter
from autoflow.config import Settings
from autoflow.db.database import close_database, init_database
from autoflow.db.secrets import TokenCipher
from autoflow.models import (
    ActionResult,
    Credential,
    ExecutionContext,
    ExternalEvent,
    Step,
    StepType,
    TokenGrant,
    WorkflowCreate,
)
from autoflow.services.engine import WorkflowEngine, build_engine, init_engine, shutdown_engine


class FakeAdapter(BaseAdapter):
    """In-memory adapter that records every call."""

    service_name: ClassVar[str] = "fake"
    display_name: ClassVar[str] = "Fake"
    trigger_events: ClassVar[list[str]] = ["new_item"]
    action_events: ClassVar[list[str]] = ["record", "fail"]
    required_config: ClassVar[dict[str, list[str]]] = {"record": ["label"]}

    def __init__(self) -> None:
        super().__init__()
        self.events: list[ExternalEvent] = []
        self.fetch_errors: list[Exception] = []
        self.action_errors: list[Exception] = []
        self.refresh_error: Exception | None = None
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_started = asyncio.Event()
        self.fetch_calls = 0
        self.refreshes = 0
        self.tokens_seen: list[str] = []
        self.performed: list[tuple[str, dict[str, Any]]] = []

    async def fetch_events(
        self, credential: Credential, event_type: str, config: dict[str, Any]
    ) -> list[ExternalEvent]:
        self.fetch_calls += 1
        self.tokens_seen.append(credential.access_token)
        self.fetch_started.set()
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return list(self.events)

    async def perform_action(
        self,
        credential: Credential,
        event_type: str,
        config: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        self.tokens_seen.append(credential.access_token)
        if self.action_errors:
            raise self.action_errors.pop(0)
        if event_type == "fail":
            raise ActionError("fake action failed", service=self.service_name)

        rendered = self.render_config(config, context)
        self.performed.append((event_type, rendered))
        return ActionResult(output=rendered, external_id=f"out-{len(self.performed)}")

    async def refresh_access_token(self, credential: Credential) -> TokenGrant:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(access_token=f"refreshed-{self.refreshes}")


def _make_event(event_id: str, text: str = "", score: float | None = None, **payload: Any) -> ExternalEvent:
    return ExternalEvent(
        id=event_id,
        occurred_at=datetime(2024, 1, 1, tzinfo=UTC),
        payload={"title": text, **payload},
        text=text,
        score=score,
    )


def _fake_workflow(user_id: str = "user-1", **trigger_config: Any) -> WorkflowCreate:
    return WorkflowCreate(
        user_id=user_id,
        name="Fake workflow",
        steps=[
            Step(
                step_type=StepType.TRIGGER,
                service_name="fake",
                event_type="new_item",
                configuration=trigger_config,
            ),
            Step(
                step_type=StepType.ACTION,
                service_name="fake",
                event_type="record",
                configuration={"label": "{{trigger.title}}"},
            ),
        ],
    )


@pytest.fixture(autouse=True)
async def setup_test_db():
    """Set up a test database for each test."""
    # Create a temporary database file
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    # Initialize the database
    await init_database(db_path)

    yield

    # Clean up
    await close_database()
    os.unlink(db_path)


@pytest.fixture
def settings() -> Settings:
    """Settings with a short poll interval and request timeout."""
    return Settings(
        secrets_key="test-secrets-key",
        poll_interval_seconds=0.05,
        request_timeout_seconds=2.0,
    )


@pytest.fixture
def cipher(settings: Settings) -> TokenCipher:
    return TokenCipher(settings.secrets_key)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def make_event() -> Callable[..., ExternalEvent]:
    """Factory for trigger events."""
    return _make_event


@pytest.fixture
def fake_workflow() -> Callable[..., WorkflowCreate]:
    """Factory for a fake trigger -> fake record workflow definition."""
    return _fake_workflow


@pytest.fixture
async def engine(settings: Settings, fake_adapter: FakeAdapter) -> AsyncGenerator[WorkflowEngine, None]:
    """An engine running only the fake adapter (not started)."""
    engine = build_engine(settings, adapters={"fake": fake_adapter})
    yield engine
    await engine.stop()


@pytest.fixture
async def client(settings: Settings, fake_adapter: FakeAdapter) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    from autoflow.main import app

    await init_engine(settings, adapters={"fake": fake_adapter}, start=False)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    await shutdown_engine()
