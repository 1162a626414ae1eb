"""Pydantic models for external trigger events."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ExternalEvent(BaseModel):
    """An event reported by a trigger source.

    ``id`` is assigned by the provider and is the dedup key. ``text`` is the
    searchable text the adapter exposes to keyword filters and ``score`` the
    provider's ranking number used by ``min_score``.
    """

    id: str = Field(..., min_length=1)
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    text: str = ""
    score: float | None = None
    scope: str | None = None  # subreddit, database, channel...


class ProcessedEvent(BaseModel):
    """A dedup ledger record: the event has been delivered."""

    user_id: str
    service_name: str
    external_event_id: str
    scope: str | None = None
    recorded_at: datetime
