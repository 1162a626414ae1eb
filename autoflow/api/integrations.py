"""API routes for connecting external services."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from autoflow.errors import EngineError, http_status
from autoflow.models import IntegrationStatus, ProcessedEvent
from autoflow.services.engine import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations")


async def _integration(user_id: str, service_name: str) -> IntegrationStatus:
    for status in await get_engine().list_integration_status(user_id):
        if status.service_name == service_name:
            return status
    raise HTTPException(status_code=400, detail=f"Unknown service '{service_name}'")


@router.get("", response_model=list[IntegrationStatus])
async def list_integrations(user_id: str = Query(..., min_length=1)):
    """List every service with the user's connection status."""
    return await get_engine().list_integration_status(user_id)


# ==================== Credentials ====================


@router.put("/{service_name}/credential", response_model=IntegrationStatus)
async def connect_credential(
    service_name: str,
    payload: dict[str, Any],
    user_id: str = Query(..., min_length=1),
):
    """Store (or replace) the user's tokens for a service.

    Token values are never echoed back.
    """
    try:
        await get_engine().connect_credential(user_id, service_name, payload)
    except EngineError as e:
        raise HTTPException(status_code=http_status(e), detail=str(e))
    return await _integration(user_id, service_name)


@router.delete("/{service_name}/credential")
async def disconnect_credential(service_name: str, user_id: str = Query(..., min_length=1)):
    """Remove the user's tokens for a service."""
    deleted = await get_engine().disconnect_credential(user_id, service_name)
    if not deleted:
        raise HTTPException(status_code=404, detail="Credential not found")
    return {"deleted": True}


@router.get("/{service_name}/processed-events", response_model=list[ProcessedEvent])
async def list_processed_events(
    service_name: str,
    user_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
):
    """List the trigger events most recently recorded as delivered."""
    return await get_engine().processed_events(user_id, service_name, limit=limit)


# ==================== OAuth ====================


@router.get("/{service_name}/authorize")
async def authorize(
    service_name: str,
    user_id: str = Query(..., min_length=1),
    redirect_uri: str | None = None,
):
    """Get the provider consent URL to send the user to."""
    try:
        url = get_engine().authorization_url(user_id, service_name, redirect_uri)
    except EngineError as e:
        raise HTTPException(status_code=http_status(e), detail=str(e))
    return {"authorization_url": url}


@router.get("/{service_name}/callback", response_model=IntegrationStatus)
async def oauth_callback(
    service_name: str,
    state: str,
    code: str | None = None,
    error: str | None = None,
    redirect_uri: str | None = None,
):
    """Complete the authorization-code flow after the provider redirects back."""
    if error or not code:
        logger.warning(f"{service_name} authorization was not granted: {error or 'no code'}")
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error or 'missing code'}")

    try:
        credential = await get_engine().complete_authorization(
            service_name, code, state, redirect_uri=redirect_uri
        )
    except EngineError as e:
        raise HTTPException(status_code=http_status(e), detail=str(e))
    return await _integration(credential.user_id, service_name)
