"""Workflow Runner - schedules poll/execute cycles per workflow.

Each enabled workflow gets its own asyncio task, so workflows run in parallel
while a single workflow's cycle (poll, then execute each accepted event in
order) is strictly sequential:

    idle -> polling -> (no events) -> idle
                    -> executing(event) -> ... -> idle
    any state -> disabled (on toggle off); disabled -> idle (on toggle on)

A cycle requested while the workflow's previous cycle is still running is
skipped, not queued. Disabling lets an in-flight cycle finish and stops new
ones. Removal waits for the in-flight cycle before returning.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from autoflow.adapters.base import AdapterError
from autoflow.errors import EngineError, WorkflowNotFoundError, error_kind
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ExecutionResult, ExecutionStatus, PollCycleResult
from autoflow.models.workflow import Workflow, WorkflowState, WorkflowStatus
from autoflow.services.action_executor import ActionExecutor
from autoflow.services.trigger_poller import TriggerPoller

logger = logging.getLogger(__name__)

HISTORY_SIZE = 20


@dataclass
class WorkflowRuntime:
    """In-memory scheduling state of one workflow."""

    workflow: Workflow
    status: WorkflowStatus
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self.workflow.enabled


class WorkflowRunner:
    """Owns per-workflow concurrency and failure containment."""

    def __init__(
        self,
        poller: TriggerPoller,
        executor: ActionExecutor,
        poll_interval: float = 60.0,
        max_concurrent: int = 16,
    ) -> None:
        self._poller = poller
        self._executor = executor
        self._poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._runtimes: dict[str, WorkflowRuntime] = {}
        self._removed: set[str] = set()
        self._running = False

    # ==================== Lifecycle ====================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, workflows: list[Workflow]) -> None:
        """Start scheduling the given workflows."""
        self._running = True
        for workflow in workflows:
            self.register(workflow)
        logger.info(f"Workflow runner started with {len(workflows)} workflow(s)")

    async def stop(self) -> None:
        """Stop scheduling; in-flight cycles are allowed to finish."""
        self._running = False
        tasks = []
        for runtime in self._runtimes.values():
            runtime.wake.set()
            if runtime.task is not None:
                tasks.append(runtime.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Workflow runner stopped")

    # ==================== Registration ====================

    def register(self, workflow: Workflow) -> WorkflowStatus:
        """Track a workflow (or its new version) and schedule it if enabled."""
        if workflow.id in self._removed:
            raise WorkflowNotFoundError(f"Workflow {workflow.id} has been removed")

        runtime = self._runtimes.get(workflow.id)
        if runtime is None:
            runtime = WorkflowRuntime(
                workflow=workflow,
                status=WorkflowStatus(workflow_id=workflow.id),
            )
            self._runtimes[workflow.id] = runtime
        else:
            runtime.workflow = workflow

        if not workflow.enabled:
            if not runtime.lock.locked():
                runtime.status.state = WorkflowState.DISABLED
            runtime.wake.set()
            return runtime.status

        if runtime.status.state == WorkflowState.DISABLED:
            runtime.status.state = WorkflowState.IDLE

        if self._running and (runtime.task is None or runtime.task.done()):
            runtime.task = asyncio.create_task(
                self._loop(runtime), name=f"workflow-{workflow.id}"
            )
        return runtime.status

    async def remove(self, workflow_id: str) -> None:
        """Stop scheduling a workflow, waiting for any in-flight cycle."""
        self._removed.add(workflow_id)
        runtime = self._runtimes.get(workflow_id)
        if runtime is None:
            return

        runtime.workflow = runtime.workflow.model_copy(update={"enabled": False})
        runtime.wake.set()
        if runtime.task is not None:
            await runtime.task

        async with runtime.lock:
            self._runtimes.pop(workflow_id, None)

    def status(self, workflow_id: str) -> WorkflowStatus:
        """Get the runtime status of a workflow."""
        runtime = self._runtimes.get(workflow_id)
        if runtime is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} is not scheduled")
        return runtime.status

    def is_busy(self, workflow_id: str) -> bool:
        """Check whether a cycle is in flight for the workflow."""
        runtime = self._runtimes.get(workflow_id)
        return runtime is not None and runtime.lock.locked()

    # ==================== Cycles ====================

    def _interval_for(self, workflow: Workflow) -> float:
        configured = workflow.trigger.configuration.get("poll_interval_seconds")
        try:
            interval = float(configured) if configured is not None else self._poll_interval
        except (TypeError, ValueError):
            interval = self._poll_interval
        return interval if interval > 0 else self._poll_interval

    async def _loop(self, runtime: WorkflowRuntime) -> None:
        """Poll a workflow until it is disabled or the runner stops."""
        while self._running and runtime.enabled:
            runtime.wake.clear()
            try:
                await self.run_cycle(runtime.workflow.id)
            except Exception as e:
                logger.exception(f"Unexpected error in cycle for workflow {runtime.workflow.id}: {e}")

            try:
                await asyncio.wait_for(
                    runtime.wake.wait(), timeout=self._interval_for(runtime.workflow)
                )
            except TimeoutError:
                pass

    def _runtime(self, workflow_id: str) -> WorkflowRuntime:
        runtime = self._runtimes.get(workflow_id)
        if runtime is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} is not scheduled")
        return runtime

    async def run_cycle(self, workflow_id: str) -> PollCycleResult:
        """Run one poll/execute cycle, unless one is already in flight.

        Returns:
            The cycle summary; ``skipped`` is set if another cycle was running
            or the workflow is disabled
        """
        runtime = self._runtime(workflow_id)

        if runtime.lock.locked():
            logger.info(f"Skipping poll for workflow {workflow_id}: previous cycle still running")
            return PollCycleResult(workflow_id=workflow_id, skipped=True)

        async with runtime.lock, self._semaphore:
            if not runtime.enabled:
                return PollCycleResult(workflow_id=workflow_id, skipped=True)
            return await self._poll_and_execute(runtime)

    async def deliver(self, workflow_id: str, events: list[ExternalEvent]) -> PollCycleResult:
        """Run pushed events through dedup, filters and execution.

        Waits for an in-flight cycle instead of skipping, so pushed events are
        never dropped.
        """
        runtime = self._runtime(workflow_id)

        async with runtime.lock, self._semaphore:
            if not runtime.enabled:
                return PollCycleResult(workflow_id=workflow_id, skipped=True)
            try:
                try:
                    accepted = await self._poller.accept(runtime.workflow, events)
                except Exception as e:
                    return self._failed_cycle(runtime, e)
                return await self._execute_all(runtime, accepted, fetched=len(events))
            finally:
                self._settle(runtime)

    async def _poll_and_execute(self, runtime: WorkflowRuntime) -> PollCycleResult:
        workflow = runtime.workflow
        status = runtime.status

        status.state = WorkflowState.POLLING
        status.last_poll_at = datetime.now(UTC)

        try:
            try:
                events = await self._poller.fetch(workflow)
                accepted = await self._poller.accept(workflow, events)
            except Exception as e:
                return self._failed_cycle(runtime, e)

            return await self._execute_all(runtime, accepted, fetched=len(events))
        finally:
            self._settle(runtime)

    async def _execute_all(
        self, runtime: WorkflowRuntime, events: list[ExternalEvent], fetched: int
    ) -> PollCycleResult:
        """Execute accepted events one at a time, in order."""
        workflow = runtime.workflow
        result = PollCycleResult(workflow_id=workflow.id, fetched=fetched, accepted=len(events))

        for event in events:
            runtime.status.state = WorkflowState.EXECUTING
            execution = await self._executor.execute(workflow, event)
            self._record_execution(runtime, execution)
            result.executions.append(execution)

        if all(e.status == ExecutionStatus.SUCCEEDED for e in result.executions):
            runtime.status.consecutive_failures = 0
            runtime.status.last_error_kind = None
            runtime.status.last_error_message = None

        return result

    # ==================== Status bookkeeping ====================

    def _settle(self, runtime: WorkflowRuntime) -> None:
        runtime.status.state = WorkflowState.IDLE if runtime.enabled else WorkflowState.DISABLED

    def _failed_cycle(self, runtime: WorkflowRuntime, error: Exception) -> PollCycleResult:
        self._record_failure(runtime, error)
        return PollCycleResult(
            workflow_id=runtime.workflow.id,
            error_kind=error_kind(error),
            error_message=str(error),
        )

    def _record_failure(self, runtime: WorkflowRuntime, error: Exception) -> None:
        status = runtime.status
        status.last_error_kind = error_kind(error)
        status.last_error_message = str(error)
        status.consecutive_failures += 1

        if isinstance(error, EngineError | AdapterError):
            logger.warning(f"Poll failed for workflow {runtime.workflow.id}: {status.last_error_kind}: {error}")
        else:
            logger.exception(f"Poll failed for workflow {runtime.workflow.id}: {error}")

    def _record_execution(self, runtime: WorkflowRuntime, execution: ExecutionResult) -> None:
        status = runtime.status
        status.recent_executions = [*status.recent_executions, execution][-HISTORY_SIZE:]

        if execution.status == ExecutionStatus.FAILED:
            status.last_error_kind = execution.error_kind
            status.last_error_message = (
                f"step {execution.failed_step} failed: {execution.error_message}"
            )
            status.consecutive_failures += 1
