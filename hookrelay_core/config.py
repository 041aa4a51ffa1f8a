"""Configuration for the webhook relay.

All values can be supplied through environment variables prefixed with
``HOOKRELAY_``. Nested sections use ``__`` as delimiter, for example
``HOOKRELAY_DISPATCH__MAX_ATTEMPTS=8``.
"""

import os
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_production() -> bool:
    """Check if running in production environment."""
    env = os.getenv("ENVIRONMENT", "development").lower()
    return env in ("production", "prod", "staging")


class SourceSettings(BaseModel):
    """Inbound source configuration."""

    provider: str = "generic"
    secret: Optional[str] = None
    signature_header: Optional[str] = None
    tolerance_seconds: int = 300
    validator: Optional[str] = Field(
        default=None,
        description="Override the provider's signature scheme: hmac, timestamp, "
        "header_alias, header_timestamp, apikey, basic or jwt",
    )

    @field_validator("validator")
    @classmethod
    def validate_validator(cls, v: Optional[str]) -> Optional[str]:
        allowed = ("hmac", "timestamp", "header_alias", "header_timestamp", "apikey", "basic", "jwt")
        if v is not None and v not in allowed:
            raise ValueError(f"validator must be one of: {', '.join(allowed)}")
        return v


class SigningSettings(BaseModel):
    """Signature settings for outbound requests."""

    default_secret: str = ""
    outbound_scheme: str = Field(
        default="timestamp",
        description="Signature scheme for outgoing webhooks: timestamp or hmac",
    )
    signature_header: str = "X-Webhook-Signature"
    id_header: str = "X-Webhook-Id"
    event_header: str = "X-Webhook-Event"
    timestamp_header: str = "X-Webhook-Timestamp"
    attempt_header: str = "X-Webhook-Attempt"
    tolerance_seconds: int = 300

    @field_validator("outbound_scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        if v not in ("timestamp", "hmac"):
            raise ValueError("outbound_scheme must be 'timestamp' or 'hmac'")
        return v


class ReceivingSettings(BaseModel):
    """Inbound webhook settings."""

    require_signatures: bool = True
    sources: Dict[str, SourceSettings] = Field(default_factory=dict)


class DispatchSettings(BaseModel):
    """Outbound delivery settings."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=30.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.2, ge=0.0, lt=1.0)
    max_delay_seconds: float = Field(default=3600.0, gt=0)

    timeout_seconds: float = 5.0
    connect_timeout_seconds: float = 3.0
    max_concurrent: int = 50
    poll_interval_seconds: float = 0.5

    user_agent: str = "HookRelay-Webhook/1.0"
    response_body_limit: int = 5000
    success_status_codes: List[int] = Field(default_factory=lambda: list(range(200, 300)))


class CircuitBreakerSettings(BaseModel):
    """Per-destination circuit breaker settings."""

    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    reset_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_reset_timeout_seconds: float = Field(default=3600.0, gt=0)

    redis_url: Optional[str] = None
    key_prefix: str = "webhook-circuit:"

    @model_validator(mode="after")
    def validate_cap(self) -> "CircuitBreakerSettings":
        if self.max_reset_timeout_seconds < self.reset_timeout_seconds:
            raise ValueError("max_reset_timeout_seconds must be >= reset_timeout_seconds")
        return self


class Settings(BaseSettings):
    """Webhook relay settings."""

    model_config = SettingsConfigDict(
        env_prefix="HOOKRELAY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"
    service_name: str = "hookrelay"
    log_level: str = "INFO"
    log_format: str = Field(
        default="json" if _is_production() else "console",
        description="Log output format: json or console",
    )

    retention_days: int = 30

    signing: SigningSettings = Field(default_factory=SigningSettings)
    receiving: ReceivingSettings = Field(default_factory=ReceivingSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
