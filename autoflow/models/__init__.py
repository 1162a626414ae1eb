"""Pydantic models for the AutoFlow engine."""

from autoflow.models.credential import Credential, IntegrationStatus, TokenGrant, TokenPayload
from autoflow.models.event import ExternalEvent, ProcessedEvent
from autoflow.models.execution import (
    ActionResult,
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    PollCycleResult,
)
from autoflow.models.workflow import (
    Step,
    StepType,
    Workflow,
    WorkflowCreate,
    WorkflowState,
    WorkflowStatus,
)

__all__ = [
    # Workflows
    "Step",
    "StepType",
    "Workflow",
    "WorkflowCreate",
    "WorkflowState",
    "WorkflowStatus",
    # Credentials
    "Credential",
    "IntegrationStatus",
    "TokenGrant",
    "TokenPayload",
    # Events
    "ExternalEvent",
    "ProcessedEvent",
    # Execution
    "ActionResult",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionStatus",
    "PollCycleResult",
]
