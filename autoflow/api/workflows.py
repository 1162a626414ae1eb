"""Workflow API routes."""

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from autoflow.errors import EngineError, http_status
from autoflow.models import (
    ExternalEvent,
    PollCycleResult,
    Workflow,
    WorkflowCreate,
    WorkflowStatus,
)
from autoflow.services.engine import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows")


class EnabledUpdate(BaseModel):
    """Request to turn a workflow on or off."""

    enabled: bool


class EventDelivery(BaseModel):
    """Trigger events pushed by a provider webhook."""

    events: list[ExternalEvent]


def _http_error(error: EngineError) -> HTTPException:
    return HTTPException(status_code=http_status(error), detail=str(error))


# ==================== Workflow CRUD ====================


@router.post("", response_model=Workflow, status_code=201)
async def submit_workflow(data: WorkflowCreate):
    """Validate and create a workflow."""
    engine = get_engine()
    try:
        workflow_id = await engine.submit_workflow(data)
        return await engine.get_workflow(workflow_id)
    except EngineError as e:
        raise _http_error(e)


@router.get("", response_model=list[Workflow])
async def list_workflows(user_id: str = Query(..., min_length=1)):
    """List a user's workflows."""
    return await get_engine().list_workflows(user_id)


@router.get("/{workflow_id}", response_model=Workflow)
async def get_workflow(workflow_id: str):
    """Get a workflow by ID."""
    try:
        return await get_engine().get_workflow(workflow_id)
    except EngineError as e:
        raise _http_error(e)


@router.put("/{workflow_id}", response_model=Workflow)
async def replace_workflow(workflow_id: str, data: WorkflowCreate):
    """Replace a workflow's definition with a new version."""
    try:
        return await get_engine().replace_workflow(workflow_id, data)
    except EngineError as e:
        raise _http_error(e)


@router.delete("/{workflow_id}")
async def delete_workflow(workflow_id: str):
    """Delete a workflow after its in-flight cycle finishes."""
    try:
        await get_engine().delete_workflow(workflow_id)
    except EngineError as e:
        raise _http_error(e)
    return {"deleted": True}


@router.put("/{workflow_id}/enabled", response_model=Workflow)
async def set_enabled(workflow_id: str, data: EnabledUpdate):
    """Turn a workflow on or off."""
    try:
        return await get_engine().set_enabled(workflow_id, data.enabled)
    except EngineError as e:
        raise _http_error(e)


# ==================== Runtime ====================


@router.get("/{workflow_id}/status", response_model=WorkflowStatus)
async def get_status(workflow_id: str):
    """Get a workflow's runtime state and recent executions."""
    try:
        return await get_engine().workflow_status(workflow_id)
    except EngineError as e:
        raise _http_error(e)


@router.post("/{workflow_id}/poll", response_model=PollCycleResult)
async def trigger_poll(workflow_id: str):
    """Run a poll cycle now."""
    try:
        return await get_engine().trigger_poll(workflow_id)
    except EngineError as e:
        raise _http_error(e)


@router.post("/{workflow_id}/events", response_model=PollCycleResult)
async def deliver_events(workflow_id: str, data: EventDelivery):
    """Feed pushed trigger events to a workflow."""
    try:
        return await get_engine().deliver_events(workflow_id, data.events)
    except EngineError as e:
        raise _http_error(e)
