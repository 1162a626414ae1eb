"""Models for action execution and poll cycles."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from autoflow.models.event import ExternalEvent


class ActionResult(BaseModel):
    """Output of one successful action step."""

    output: dict[str, Any] = Field(default_factory=dict)
    external_id: str | None = None  # ID of the created object, if any


class ExecutionStatus(str, Enum):
    """Outcome of an action chain."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionResult(BaseModel):
    """Outcome of running a workflow's action chain for one event.

    ``outputs`` holds every completed step, keyed by 0-based action index.
    When the chain fails, ``failed_step`` is the index of the step that
    raised; steps before it have already had their external effects and are
    not rolled back.
    """

    workflow_id: str
    event_id: str
    status: ExecutionStatus
    outputs: dict[int, dict[str, Any]] = Field(default_factory=dict)
    failed_step: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    started_at: datetime
    finished_at: datetime


class PollCycleResult(BaseModel):
    """Summary of one poll (or push delivery) cycle for a workflow."""

    workflow_id: str
    skipped: bool = False
    fetched: int = 0
    accepted: int = 0
    executions: list[ExecutionResult] = Field(default_factory=list)
    error_kind: str | None = None
    error_message: str | None = None


@dataclass
class ExecutionContext:
    """State threaded through one action chain.

    Lives for a single execution and is never persisted.
    """

    event: ExternalEvent
    outputs: dict[int, dict[str, Any]] = field(default_factory=dict)

    def record(self, step_index: int, result: ActionResult) -> None:
        """Store a completed step's output for later steps."""
        output = dict(result.output)
        if result.external_id is not None:
            output.setdefault("id", result.external_id)
        self.outputs[step_index] = output

    def variables(self) -> dict[str, Any]:
        """Template variables: ``trigger.*`` and ``steps.<index>.*``."""
        trigger = {"id": self.event.id, "text": self.event.text, **self.event.payload}
        return {
            "trigger": trigger,
            "steps": {str(index): output for index, output in self.outputs.items()},
        }
