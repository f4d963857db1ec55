from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilience_core.circuit_breaker import CircuitBreakerConfig


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Process-wide settings for the resilience layer."""

    model_config = prefixed_settings_config("RESILIENCE_")

    redis_url: str | None = None
    circuit_key_prefix: str = "circuit:"
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_ms: int = 30_000
    circuit_success_threshold: int = 2
    circuit_failure_ttl_seconds: int = 60
    event_retention_days: int = 30

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("circuit_key_prefix", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @model_validator(mode="after")
    def _validate_positive_numbers(self) -> ResilienceSettings:
        for name in (
            "circuit_failure_threshold",
            "circuit_reset_timeout_ms",
            "circuit_success_threshold",
            "circuit_failure_ttl_seconds",
            "event_retention_days",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        return self

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        """Build the breaker configuration described by these settings."""
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout_ms=self.circuit_reset_timeout_ms,
            success_threshold=self.circuit_success_threshold,
            failure_ttl_seconds=self.circuit_failure_ttl_seconds,
        )
