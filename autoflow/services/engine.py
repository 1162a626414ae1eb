"""Boundary facade for the workflow engine.

``WorkflowEngine`` is the single object the UI, auth and marketplace layers talk
to. It validates workflow definitions, manages credentials and hands scheduling
to the ``WorkflowRunner``. ``build_engine`` wires the stores, adapters and
services from a ``Settings`` instance.
"""

import json
import logging
import secrets
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import ValidationError

from autoflow.adapters import AdapterError, AdapterRegistry, BaseAdapter
from autoflow.config import Settings
from autoflow.db.credential_store import CredentialStore
from autoflow.db.dedup_ledger import DedupLedger
from autoflow.db.secrets import SecretsError, TokenCipher
from autoflow.db.workflow_store import WorkflowStore
from autoflow.errors import (
    InvalidCredentialError,
    UnknownServiceError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from autoflow.models.credential import Credential, IntegrationStatus, TokenPayload
from autoflow.models.event import ExternalEvent, ProcessedEvent
from autoflow.models.execution import PollCycleResult
from autoflow.models.workflow import Step, StepType, Workflow, WorkflowCreate, WorkflowStatus
from autoflow.services.action_executor import ActionExecutor
from autoflow.services.credential_manager import CredentialLifecycleManager
from autoflow.services.trigger_poller import TriggerPoller, validate_filters
from autoflow.services.workflow_runner import WorkflowRunner

logger = logging.getLogger(__name__)

# Seconds an OAuth ``state`` value stays valid
OAUTH_STATE_TTL = 600


class WorkflowEngine:
    """Workflow automation engine."""

    def __init__(
        self,
        adapters: Mapping[str, BaseAdapter],
        cipher: TokenCipher,
        poll_interval: float = 60.0,
        request_timeout: float = 30.0,
        max_concurrent_workflows: int = 16,
    ) -> None:
        self.adapters = dict(adapters)
        self._cipher = cipher

        self.workflows = WorkflowStore()
        self.credentials = CredentialStore(cipher)
        self.ledger = DedupLedger()

        self.lifecycle = CredentialLifecycleManager(
            self.adapters, self.credentials, timeout=request_timeout
        )
        self.poller = TriggerPoller(self.lifecycle, self.ledger)
        self.executor = ActionExecutor(self.lifecycle)
        self.runner = WorkflowRunner(
            self.poller,
            self.executor,
            poll_interval=poll_interval,
            max_concurrent=max_concurrent_workflows,
        )

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Schedule every enabled workflow."""
        workflows = await self.workflows.list_enabled()
        await self.runner.start(workflows)

    async def stop(self) -> None:
        """Stop scheduling and wait for in-flight cycles."""
        await self.runner.stop()

    # ==================== Workflow definitions ====================

    def _adapter(self, service_name: str) -> BaseAdapter:
        return self.lifecycle.adapter(service_name)

    def _split_steps(self, definition: WorkflowCreate) -> tuple[Step, list[Step]]:
        """Validate a definition and split it into its trigger and actions.

        Raises:
            WorkflowValidationError: If the step shape is wrong
            UnknownServiceError: If a step names no registered adapter/event
        """
        triggers = [s for s in definition.steps if s.step_type == StepType.TRIGGER]
        actions = [s for s in definition.steps if s.step_type == StepType.ACTION]

        if len(triggers) != 1:
            raise WorkflowValidationError(
                f"A workflow needs exactly one trigger step, got {len(triggers)}"
            )
        if not actions:
            raise WorkflowValidationError("A workflow needs at least one action step")

        for step in definition.steps:
            adapter = self._adapter(step.service_name)
            if not adapter.supports(step.step_type, step.event_type):
                raise UnknownServiceError(
                    f"{adapter.display_name} has no {step.step_type.value} '{step.event_type}'",
                    service=step.service_name,
                )
            adapter.validate_config(step.step_type, step.event_type, step.configuration)

        validate_filters(triggers[0].configuration)
        return triggers[0], actions

    async def _require(self, workflow_id: str) -> Workflow:
        workflow = await self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def submit_workflow(self, definition: WorkflowCreate) -> str:
        """Validate and store a new workflow.

        Returns:
            The new workflow's ID
        """
        trigger, actions = self._split_steps(definition)

        workflow = await self.workflows.create(
            user_id=definition.user_id,
            name=definition.name,
            trigger=trigger,
            actions=actions,
            description=definition.description,
            enabled=definition.enabled,
        )
        self.runner.register(workflow)

        logger.info(
            f"Created workflow {workflow.id} for user {workflow.user_id}: "
            f"{trigger.service_name}.{trigger.event_type} -> {len(actions)} action(s)"
        )
        return workflow.id

    async def replace_workflow(self, workflow_id: str, definition: WorkflowCreate) -> Workflow:
        """Store a new version of an existing workflow's definition."""
        existing = await self._require(workflow_id)
        if existing.user_id != definition.user_id:
            raise WorkflowValidationError("A workflow cannot change owner")

        trigger, actions = self._split_steps(definition)

        workflow = await self.workflows.replace(
            workflow_id,
            name=definition.name,
            trigger=trigger,
            actions=actions,
            description=definition.description,
        )
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        self.runner.register(workflow)
        logger.info(f"Workflow {workflow_id} replaced with version {workflow.version}")
        return workflow

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        """List a user's workflows."""
        return await self.workflows.list_for_user(user_id)

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """Get a workflow by ID."""
        return await self._require(workflow_id)

    async def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        """Turn a workflow on or off."""
        workflow = await self.workflows.set_enabled(workflow_id, enabled)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        self.runner.register(workflow)
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}")
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow once its in-flight cycle (if any) has finished."""
        await self._require(workflow_id)
        await self.workflows.delete(workflow_id)
        await self.runner.remove(workflow_id)
        logger.info(f"Deleted workflow {workflow_id}")

    # ==================== Runtime ====================

    async def _tracked(self, workflow_id: str) -> str:
        """Make sure the runner knows a stored workflow."""
        workflow = await self._require(workflow_id)
        try:
            self.runner.status(workflow_id)
        except WorkflowNotFoundError:
            self.runner.register(workflow)
        return workflow_id

    async def workflow_status(self, workflow_id: str) -> WorkflowStatus:
        """Get a workflow's runtime status."""
        return self.runner.status(await self._tracked(workflow_id))

    async def trigger_poll(self, workflow_id: str) -> PollCycleResult:
        """Run a poll cycle now (skipped if one is in flight)."""
        return await self.runner.run_cycle(await self._tracked(workflow_id))

    async def deliver_events(self, workflow_id: str, events: list[ExternalEvent]) -> PollCycleResult:
        """Feed pushed trigger events to a workflow."""
        return await self.runner.deliver(await self._tracked(workflow_id), events)

    async def processed_events(
        self, user_id: str, service_name: str, limit: int = 50
    ) -> list[ProcessedEvent]:
        """List the most recently delivered events for (user, service)."""
        return await self.ledger.list_recent(user_id, service_name, limit=limit)

    # ==================== Credentials ====================

    async def connect_credential(
        self,
        user_id: str,
        service_name: str,
        payload: TokenPayload | dict[str, Any],
    ) -> Credential:
        """Store (or replace) a user's credential for a service.

        Raises:
            UnknownServiceError: If no adapter is registered for the service
            InvalidCredentialError: If the payload holds no usable token
        """
        self._adapter(service_name)

        if not isinstance(payload, TokenPayload):
            try:
                payload = TokenPayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidCredentialError(
                    f"Invalid {service_name} token payload: {e.error_count()} error(s)",
                    service=service_name,
                ) from e

        if not payload.access_token.strip():
            raise InvalidCredentialError("Access token is empty", service=service_name)

        credential = await self.credentials.upsert(
            Credential(
                user_id=user_id,
                service_name=service_name,
                access_token=payload.access_token,
                refresh_token=payload.refresh_token,
                expires_at=payload.resolved_expiry(),
                extra=payload.extra,
            )
        )
        logger.info(f"Connected {service_name} for user {user_id}")
        return credential

    async def disconnect_credential(self, user_id: str, service_name: str) -> bool:
        """Remove a user's credential for a service.

        Workflows relying on it keep running and report ``credential_not_found``.
        """
        deleted = await self.credentials.delete(user_id, service_name)
        if deleted:
            logger.info(f"Disconnected {service_name} for user {user_id}")
        return deleted

    async def list_integration_status(self, user_id: str) -> list[IntegrationStatus]:
        """Connection status of every registered service for a user."""
        connected = {c.service_name: c for c in await self.credentials.list_for_user(user_id)}

        statuses = []
        for name, adapter in sorted(self.adapters.items()):
            credential = connected.get(name)
            statuses.append(
                IntegrationStatus(
                    service_name=name,
                    display_name=adapter.display_name,
                    connected=credential is not None,
                    supports_triggers=list(adapter.trigger_events),
                    supports_actions=list(adapter.action_events),
                    oauth_configured=adapter.settings.is_configured,
                    expires_at=credential.expires_at if credential else None,
                    updated_at=credential.updated_at if credential else None,
                )
            )
        return statuses

    # ==================== OAuth connect ====================

    def _seal_state(self, user_id: str, service_name: str) -> str:
        return self._cipher.encrypt(
            json.dumps({"user_id": user_id, "service": service_name, "nonce": secrets.token_urlsafe(8)})
        )

    def _open_state(self, state: str, service_name: str) -> str:
        try:
            data = json.loads(self._cipher.decrypt(state, ttl=OAUTH_STATE_TTL))
        except (SecretsError, ValueError) as e:
            raise InvalidCredentialError("OAuth state is invalid or expired", service=service_name) from e

        if data.get("service") != service_name or not data.get("user_id"):
            raise InvalidCredentialError("OAuth state does not match this service", service=service_name)
        return data["user_id"]

    def authorization_url(self, user_id: str, service_name: str, redirect_uri: str | None = None) -> str:
        """Build the provider consent URL for a user."""
        adapter = self._adapter(service_name)
        if not adapter.settings.is_configured:
            raise InvalidCredentialError(
                f"{adapter.display_name} OAuth client is not configured", service=service_name
            )
        return adapter.authorization_url(self._seal_state(user_id, service_name), redirect_uri)

    async def complete_authorization(
        self,
        service_name: str,
        code: str,
        state: str,
        redirect_uri: str | None = None,
    ) -> Credential:
        """Finish the authorization-code flow and store the credential."""
        adapter = self._adapter(service_name)
        user_id = self._open_state(state, service_name)

        try:
            grant = await self.lifecycle.bounded(
                adapter.exchange_code(code, redirect_uri), f"{service_name} code exchange"
            )
        except AdapterError as e:
            raise InvalidCredentialError(
                f"{adapter.display_name} rejected the authorization code: {e}", service=service_name
            ) from e

        return await self.connect_credential(
            user_id,
            service_name,
            TokenPayload(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at,
                extra=grant.extra,
            ),
        )


def build_engine(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    adapters: Mapping[str, BaseAdapter] | None = None,
) -> WorkflowEngine:
    """Wire an engine from settings.

    Args:
        settings: Engine settings
        transport: Optional httpx transport handed to every adapter
        adapters: Use these adapters instead of the registered set

    Returns:
        A WorkflowEngine (not yet started)
    """
    if adapters is None:
        adapters = AdapterRegistry.create_all(settings, transport=transport)

    return WorkflowEngine(
        adapters,
        TokenCipher(settings.secrets_key, settings.database_path),
        poll_interval=settings.poll_interval_seconds,
        request_timeout=settings.request_timeout_seconds,
        max_concurrent_workflows=settings.max_concurrent_workflows,
    )


_engine: WorkflowEngine | None = None


def get_engine() -> WorkflowEngine:
    """Get the engine the application is running.

    Raises:
        RuntimeError: If ``init_engine`` has not been called
    """
    if _engine is None:
        raise RuntimeError("Workflow engine is not initialized")
    return _engine


async def init_engine(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    adapters: Mapping[str, BaseAdapter] | None = None,
    start: bool = True,
) -> WorkflowEngine:
    """Build the application engine and (optionally) start scheduling."""
    global _engine
    _engine = build_engine(settings, transport=transport, adapters=adapters)
    if start:
        await _engine.start()
    return _engine


async def shutdown_engine() -> None:
    """Stop the application engine."""
    global _engine
    if _engine:
        await _engine.stop()
        _engine = None
