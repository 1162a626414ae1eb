"""Pydantic models for stored OAuth credentials."""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field


class Credential(BaseModel):
    """Tokens for one (user, service) pair."""

    user_id: str
    service_name: str
    access_token: str = Field(..., repr=False)
    refresh_token: str | None = Field(None, repr=False)
    expires_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TokenPayload(BaseModel):
    """Token material handed to ``connect_credential``."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    expires_in: int | None = Field(None, ge=0)
    extra: dict[str, Any] = Field(default_factory=dict)

    def resolved_expiry(self) -> datetime | None:
        """Absolute expiry, computing it from ``expires_in`` if needed."""
        if self.expires_at is not None:
            return self.expires_at
        if self.expires_in is not None:
            return datetime.now(UTC) + timedelta(seconds=self.expires_in)
        return None


class TokenGrant(BaseModel):
    """Result of a provider token exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_token_response(cls, data: dict[str, Any]) -> "TokenGrant":
        """Build a grant from a standard OAuth2 token response body."""
        expires_at = None
        if data.get("expires_in"):
            expires_at = datetime.now(UTC) + timedelta(seconds=int(data["expires_in"]))

        standard = {"access_token", "refresh_token", "expires_in", "token_type"}
        extra = {k: v for k, v in data.items() if k not in standard}
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            extra=extra,
        )


class IntegrationStatus(BaseModel):
    """Connection status of one service for one user."""

    service_name: str
    display_name: str
    connected: bool = False
    supports_triggers: list[str] = Field(default_factory=list)
    supports_actions: list[str] = Field(default_factory=list)
    oauth_configured: bool = False
    expires_at: datetime | None = None
    updated_at: datetime | None = None
