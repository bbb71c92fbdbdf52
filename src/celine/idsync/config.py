"""Application configuration using pydantic-settings.

Two settings groups:
1. Settings - service-wide knobs (CELINE_IDSYNC_*)
2. IdpSettings - identity provider connection and credentials (CELINE_IDP_*)

IdpSettings is passed explicitly to the token cache, the IdP client and the
sync components; nothing reads IdP configuration from the process
environment after construction.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_SCOPE = "openid urn:zitadel:iam:org:project:id:zitadel:aud"


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CELINE_IDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    service_name: str = "celine-idsync"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool | None = None  # Defaults to JSON outside development

    # Message bus
    bus_workers: int = Field(default=4, ge=1)
    bus_max_attempts: int = Field(default=5, ge=1)
    bus_retry_delay_seconds: float = Field(default=0.0, ge=0)

    @property
    def json_logs(self) -> bool:
        """Whether log output should be rendered as JSON."""
        if self.log_json is not None:
            return self.log_json
        return self.environment != "development"


class IdpSettings(BaseSettings):
    """Identity provider connection and authentication settings."""

    model_config = SettingsConfigDict(
        env_prefix="CELINE_IDP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection
    base_url: str = Field(
        default="http://localhost:8080",
        description="IdP base URL",
    )
    api_version: str = Field(
        default="v1",
        description="Management API version segment",
    )
    timeout: float = Field(
        default=30.0,
        gt=0,
        description="HTTP request timeout in seconds",
    )

    # Client credentials
    token_endpoint: str | None = Field(
        default=None,
        description="OAuth token endpoint (derived from base_url if not set)",
    )
    client_id: str | None = Field(
        default=None,
        description="Service client ID",
    )
    client_secret: str | None = Field(
        default=None,
        description="Service client secret",
    )
    scope: str = Field(
        default=DEFAULT_TOKEN_SCOPE,
        description="Scope requested in the client credentials exchange",
    )
    token_expiry_margin: float = Field(
        default=10.0,
        ge=0,
        description="Seconds subtracted from the issued token lifetime",
    )

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Malformed IdP base URL: {value!r}")
        return value.rstrip("/")

    @property
    def management_url(self) -> str:
        """Get the versioned management API root."""
        return f"{self.base_url}/management/{self.api_version}"

    @property
    def resolved_token_endpoint(self) -> str:
        """Get the token endpoint, deriving it from base_url if not set."""
        if self.token_endpoint:
            return self.token_endpoint
        return f"{self.base_url}/oauth/v2/token"

    @property
    def has_client_credentials(self) -> bool:
        """Check if service client credentials are available."""
        return bool(self.client_id and self.client_secret)

    def with_overrides(
        self,
        *,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_version: str | None = None,
    ) -> "IdpSettings":
        """Create a new settings instance with CLI overrides applied."""
        return IdpSettings(
            **{
                **self.model_dump(),
                "base_url": base_url or self.base_url,
                "client_id": client_id or self.client_id,
                "client_secret": client_secret or self.client_secret,
                "api_version": api_version or self.api_version,
            }
        )


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return the module-level settings singleton."""
    return settings

