"""Pydantic models for workflows and their runtime status."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from autoflow.models.execution import ExecutionResult


class StepType(str, Enum):
    """Role of a step within a workflow."""

    TRIGGER = "trigger"
    ACTION = "action"


class Step(BaseModel):
    """A single trigger or action step.

    ``configuration`` is adapter-specific; the engine only reads the
    trigger-level filter keys (``keywords``, ``min_score``) and
    ``poll_interval_seconds``.
    """

    step_type: StepType
    service_name: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    configuration: dict[str, Any] = Field(default_factory=dict)

    @field_validator("service_name")
    @classmethod
    def _normalize_service(cls, value: str) -> str:
        return value.strip().lower()


class WorkflowCreate(BaseModel):
    """Submission payload for a new workflow (or a replacement version).

    Steps come as one flat list tagged by ``step_type``, the shape produced by
    the workflow generator; the engine splits it into trigger and actions.
    """

    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    steps: list[Step] = Field(default_factory=list)
    enabled: bool = True


class Workflow(BaseModel):
    """A stored workflow: one trigger feeding an ordered chain of actions."""

    id: str
    user_id: str
    name: str
    description: str | None = None
    trigger: Step
    actions: list[Step]
    enabled: bool = True
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def steps(self) -> list[Step]:
        """Trigger followed by actions, in submission order."""
        return [self.trigger, *self.actions]


class WorkflowState(str, Enum):
    """Runner state of a workflow instance."""

    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"
    DISABLED = "disabled"


class WorkflowStatus(BaseModel):
    """Runtime status of a workflow, as reported to the UI layer."""

    workflow_id: str
    state: WorkflowState = WorkflowState.IDLE
    last_poll_at: datetime | None = None
    last_error_kind: str | None = None
    last_error_message: str | None = None
    consecutive_failures: int = 0
    recent_executions: list[ExecutionResult] = Field(default_factory=list)
