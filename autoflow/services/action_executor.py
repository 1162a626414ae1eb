"""Action chain execution.

Actions run strictly in declared order, each seeing the trigger event and the
outputs of every earlier step. The first failure stops the chain.

Chains are not transactional. When step k fails, the external effects of steps
before k (a message already sent, a page already created) stay in place; the
result reports which step failed so the user can see what ran.
"""

import logging
from datetime import UTC, datetime

from autoflow.errors import error_kind
from autoflow.models.event import ExternalEvent
from autoflow.models.execution import ExecutionContext, ExecutionResult, ExecutionStatus
from autoflow.models.workflow import Workflow
from autoflow.services.credential_manager import CredentialLifecycleManager

logger = logging.getLogger(__name__)


class ActionExecutor:
    """Runs a workflow's action chain for one accepted trigger event."""

    def __init__(self, lifecycle: CredentialLifecycleManager) -> None:
        self._lifecycle = lifecycle

    async def execute(self, workflow: Workflow, event: ExternalEvent) -> ExecutionResult:
        """Execute every action step in order for ``event``.

        Returns:
            ExecutionResult with the outputs of completed steps and, on
            failure, the failing step index and error kind
        """
        started_at = datetime.now(UTC)
        context = ExecutionContext(event=event)

        for index, step in enumerate(workflow.actions):
            try:
                result = await self._lifecycle.perform_action(
                    workflow.user_id,
                    step.service_name,
                    step.event_type,
                    step.configuration,
                    context,
                )
            except Exception as e:
                logger.warning(
                    f"Workflow {workflow.id} step {index} ({step.service_name}.{step.event_type}) "
                    f"failed for event {event.id}: {e}"
                )
                return ExecutionResult(
                    workflow_id=workflow.id,
                    event_id=event.id,
                    status=ExecutionStatus.FAILED,
                    outputs=dict(context.outputs),
                    failed_step=index,
                    error_kind=error_kind(e),
                    error_message=str(e),
                    started_at=started_at,
                    finished_at=datetime.now(UTC),
                )

            context.record(index, result)

        logger.info(
            f"Workflow {workflow.id} completed {len(workflow.actions)} action(s) for event {event.id}"
        )
        return ExecutionResult(
            workflow_id=workflow.id,
            event_id=event.id,
            status=ExecutionStatus.SUCCEEDED,
            outputs=dict(context.outputs),
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )
