"""Engine configuration.

Settings are read from the environment once, at application startup, and then
passed explicitly to the stores, adapters and services that need them. Nothing
below the application entry point reads environment variables directly.
"""

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = "AutoFlow:v1.0.0 (by /u/autoflow-app)"

# Services whose OAuth client credentials are looked up in the environment
KNOWN_PROVIDERS = ("reddit", "notion", "slack")


class ProviderSettings(BaseSettings):
    """OAuth client registration for a single external provider.

    Read with a per-service prefix, e.g. ``REDDIT_CLIENT_ID``.
    """

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None

    model_config = SettingsConfigDict(extra="ignore")

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class Settings(BaseSettings):
    """Top-level engine settings."""

    database_path: str = "./data/autoflow.db"
    secrets_key: str | None = None
    log_level: str = "INFO"
    poll_interval_seconds: float = Field(
        60.0, gt=0, validation_alias=AliasChoices("poll_interval_seconds", "AUTOFLOW_POLL_INTERVAL")
    )
    request_timeout_seconds: float = Field(
        30.0,
        gt=0,
        validation_alias=AliasChoices("request_timeout_seconds", "AUTOFLOW_REQUEST_TIMEOUT"),
    )
    max_concurrent_workflows: int = Field(
        16,
        ge=1,
        validation_alias=AliasChoices(
            "max_concurrent_workflows", "AUTOFLOW_MAX_CONCURRENT_WORKFLOWS"
        ),
    )
    user_agent: str = Field(
        DEFAULT_USER_AGENT, validation_alias=AliasChoices("user_agent", "AUTOFLOW_USER_AGENT")
    )
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)

    model_config = SettingsConfigDict(extra="ignore")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    def provider(self, service_name: str) -> ProviderSettings:
        """Get the client registration for a service (empty if unset)."""
        return self.providers.get(service_name) or ProviderSettings.model_construct()

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings, and every known provider's registration, from the environment."""
        providers = {
            service: ProviderSettings(_env_prefix=f"{service.upper()}_")
            for service in KNOWN_PROVIDERS
        }
        return cls(providers=providers)
