"""Tests for per-workflow scheduling and failure containment."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from autoflow.adapters.base import FetchError
from autoflow.db.dedup_ledger import DedupLedger
from autoflow.errors import WorkflowNotFoundError
from autoflow.models import ExecutionStatus, Step, StepType, WorkflowState
from autoflow.services.workflow_runner import HISTORY_SIZE


@pytest.fixture
async def workflow_id(engine, fake_workflow) -> str:
    await engine.connect_credential("user-1", "fake", {"access_token": "t", "refresh_token": "r"})
    return await engine.submit_workflow(fake_workflow())


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestRunCycle:
    """Tests for a single poll/execute cycle."""

    @pytest.mark.asyncio
    async def test_cycle_executes_new_events(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.events = [make_event("a", "first"), make_event("b", "second")]

        result = await engine.trigger_poll(workflow_id)

        assert not result.skipped
        assert (result.fetched, result.accepted) == (2, 2)
        assert [e.event_id for e in result.executions] == ["a", "b"]
        assert [config["label"] for _, config in fake_adapter.performed] == ["first", "second"]

        status = await engine.workflow_status(workflow_id)
        assert status.state == WorkflowState.IDLE
        assert status.last_poll_at is not None
        assert status.consecutive_failures == 0
        assert len(status.recent_executions) == 2

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, engine, workflow_id, fake_adapter, make_event):
        """A second cycle while the first is in flight is suppressed, not queued."""
        fake_adapter.events = [make_event("a", "first")]
        fake_adapter.fetch_gate = asyncio.Event()

        first = asyncio.create_task(engine.trigger_poll(workflow_id))
        await fake_adapter.fetch_started.wait()

        assert (await engine.workflow_status(workflow_id)).state == WorkflowState.POLLING
        second = await engine.trigger_poll(workflow_id)
        assert second.skipped

        fake_adapter.fetch_gate.set()
        result = await first

        assert not result.skipped
        assert result.accepted == 1
        assert fake_adapter.fetch_calls == 1
        assert await DedupLedger().count("user-1", "fake") == 1

    @pytest.mark.asyncio
    async def test_poll_failure_recorded_and_retried(self, engine, workflow_id, fake_adapter, make_event):
        """A failed poll is reported and the next cycle runs normally."""
        fake_adapter.fetch_errors = [FetchError("provider down", service="fake")]

        failed = await engine.trigger_poll(workflow_id)

        assert failed.error_kind == "fetch_error"
        status = await engine.workflow_status(workflow_id)
        assert status.state == WorkflowState.IDLE
        assert status.consecutive_failures == 1
        assert status.last_error_kind == "fetch_error"
        assert (await engine.get_workflow(workflow_id)).enabled

        fake_adapter.events = [make_event("a", "back")]
        recovered = await engine.trigger_poll(workflow_id)

        assert recovered.accepted == 1
        status = await engine.workflow_status(workflow_id)
        assert status.consecutive_failures == 0
        assert status.last_error_kind is None

    @pytest.mark.asyncio
    async def test_unexpected_accept_failure_recorded(self, engine, workflow_id, fake_adapter, make_event):
        """A failure after fetching is reported on the result and the status."""
        fake_adapter.events = [make_event("a", "x")]
        engine.poller.accept = AsyncMock(side_effect=RuntimeError("ledger unavailable"))

        result = await engine.trigger_poll(workflow_id)

        assert result.error_kind == "RuntimeError"
        assert result.error_message == "ledger unavailable"
        status = await engine.workflow_status(workflow_id)
        assert status.state == WorkflowState.IDLE
        assert status.consecutive_failures == 1
        assert status.last_error_message == "ledger unavailable"
        assert fake_adapter.performed == []

    @pytest.mark.asyncio
    async def test_failed_execution_recorded(self, engine, fake_workflow, fake_adapter, make_event):
        await engine.connect_credential("user-1", "fake", {"access_token": "t"})
        definition = fake_workflow()
        definition.steps.append(Step(step_type=StepType.ACTION, service_name="fake", event_type="fail"))
        workflow_id = await engine.submit_workflow(definition)
        fake_adapter.events = [make_event("a", "x")]

        result = await engine.trigger_poll(workflow_id)

        execution = result.executions[0]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.failed_step == 1
        status = await engine.workflow_status(workflow_id)
        assert status.last_error_kind == "action_error"
        assert "step 1" in status.last_error_message
        assert status.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_disconnected_credential_is_visible(self, engine, workflow_id, fake_adapter):
        await engine.disconnect_credential("user-1", "fake")

        result = await engine.trigger_poll(workflow_id)

        assert result.error_kind == "credential_not_found"
        status = await engine.workflow_status(workflow_id)
        assert status.last_error_kind == "credential_not_found"
        assert status.state == WorkflowState.IDLE
        assert fake_adapter.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.events = [make_event(str(i), f"event {i}") for i in range(HISTORY_SIZE + 5)]

        await engine.trigger_poll(workflow_id)

        status = await engine.workflow_status(workflow_id)
        assert len(status.recent_executions) == HISTORY_SIZE
        assert status.recent_executions[-1].event_id == str(HISTORY_SIZE + 4)


class TestEnableDisable:
    """Tests for toggling and deleting workflows."""

    @pytest.mark.asyncio
    async def test_disabled_workflow_does_not_poll(self, engine, workflow_id, fake_adapter):
        await engine.set_enabled(workflow_id, False)

        result = await engine.trigger_poll(workflow_id)

        assert result.skipped
        assert fake_adapter.fetch_calls == 0
        assert (await engine.workflow_status(workflow_id)).state == WorkflowState.DISABLED

        await engine.set_enabled(workflow_id, True)
        assert (await engine.workflow_status(workflow_id)).state == WorkflowState.IDLE

    @pytest.mark.asyncio
    async def test_disable_lets_in_flight_cycle_finish(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.events = [make_event("a", "x")]
        fake_adapter.fetch_gate = asyncio.Event()

        cycle = asyncio.create_task(engine.trigger_poll(workflow_id))
        await fake_adapter.fetch_started.wait()
        await engine.set_enabled(workflow_id, False)
        fake_adapter.fetch_gate.set()
        result = await cycle

        assert result.accepted == 1
        assert len(fake_adapter.performed) == 1
        assert (await engine.workflow_status(workflow_id)).state == WorkflowState.DISABLED

    @pytest.mark.asyncio
    async def test_delete_waits_for_in_flight_cycle(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.events = [make_event("a", "x")]
        fake_adapter.fetch_gate = asyncio.Event()

        cycle = asyncio.create_task(engine.trigger_poll(workflow_id))
        await fake_adapter.fetch_started.wait()
        deletion = asyncio.create_task(engine.delete_workflow(workflow_id))
        await asyncio.sleep(0.05)

        assert not deletion.done()
        assert engine.runner.is_busy(workflow_id)

        fake_adapter.fetch_gate.set()
        await cycle
        await deletion

        assert len(fake_adapter.performed) == 1
        assert await engine.workflows.get(workflow_id) is None

    @pytest.mark.asyncio
    async def test_deleted_workflow_is_not_rescheduled(self, engine, workflow_id):
        workflow = await engine.get_workflow(workflow_id)

        await engine.delete_workflow(workflow_id)

        with pytest.raises(WorkflowNotFoundError):
            await engine.workflow_status(workflow_id)
        with pytest.raises(WorkflowNotFoundError):
            engine.runner.register(workflow)
        assert not engine.runner.is_busy(workflow_id)


class TestScheduling:
    """Tests for the background polling loop."""

    @pytest.mark.asyncio
    async def test_started_engine_polls_repeatedly(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.events = [make_event("a", "x")]

        await engine.start()
        await _wait_for(lambda: fake_adapter.fetch_calls >= 3)
        await engine.stop()

        assert len(fake_adapter.performed) == 1

    @pytest.mark.asyncio
    async def test_workflow_enabled_after_start_is_scheduled(self, engine, workflow_id, fake_adapter):
        await engine.set_enabled(workflow_id, False)
        await engine.start()
        await asyncio.sleep(0.1)
        assert fake_adapter.fetch_calls == 0

        await engine.set_enabled(workflow_id, True)
        await _wait_for(lambda: fake_adapter.fetch_calls >= 1)
        await engine.stop()

    @pytest.mark.asyncio
    async def test_trigger_poll_interval_override(self, engine, fake_workflow, fake_adapter):
        await engine.connect_credential("user-1", "fake", {"access_token": "t"})
        await engine.submit_workflow(fake_workflow(poll_interval_seconds=60))

        await engine.start()
        await asyncio.sleep(0.2)
        await engine.stop()

        assert fake_adapter.fetch_calls == 1


class TestDeliver:
    """Tests for pushed events."""

    @pytest.mark.asyncio
    async def test_deliver_deduplicates(self, engine, workflow_id, fake_adapter, make_event):
        first = await engine.deliver_events(workflow_id, [make_event("a", "x"), make_event("b", "y")])
        second = await engine.deliver_events(workflow_id, [make_event("b", "y"), make_event("c", "z")])

        assert first.accepted == 2
        assert second.accepted == 1
        assert [e.event_id for e in second.executions] == ["c"]

    @pytest.mark.asyncio
    async def test_deliver_waits_for_in_flight_cycle(self, engine, workflow_id, fake_adapter, make_event):
        fake_adapter.fetch_gate = asyncio.Event()

        cycle = asyncio.create_task(engine.trigger_poll(workflow_id))
        await fake_adapter.fetch_started.wait()
        delivery = asyncio.create_task(engine.deliver_events(workflow_id, [make_event("pushed", "x")]))
        await asyncio.sleep(0.05)
        assert not delivery.done()

        fake_adapter.fetch_gate.set()
        await cycle
        result = await delivery

        assert not result.skipped
        assert result.accepted == 1

    @pytest.mark.asyncio
    async def test_deliver_failure_recorded(self, engine, workflow_id, make_event):
        engine.poller.accept = AsyncMock(side_effect=RuntimeError("ledger unavailable"))

        result = await engine.deliver_events(workflow_id, [make_event("a", "x")])

        assert result.error_message == "ledger unavailable"
        status = await engine.workflow_status(workflow_id)
        assert status.consecutive_failures == 1
        assert status.state == WorkflowState.IDLE
