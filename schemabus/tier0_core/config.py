"""
schemabus.tier0_core.config
────────────────────────────
Typed configuration with env layering. Reads from .env → environment
variables. All fields are typed via Pydantic. Missing required fields raise
ConfigurationError at startup, not at runtime.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import Field, SecretStr, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from schemabus.tier0_core.errors import ConfigurationError

if TYPE_CHECKING:
    from schemabus.tier4_advanced.messaging import Topology


class BusConfig(BaseSettings):
    """
    Typed bus configuration. Registry and broker URLs are required;
    everything else has a working default.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="schemabus", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")
    artifact_id: str = Field(default="user-created", alias="ARTIFACT_ID")

    # ── Schema registry ───────────────────────────────────────────────────────
    registry_url: str = Field(alias="APICURIO_URL")
    registry_group: str = Field(default="default", alias="APICURIO_GROUP")
    registry_token: SecretStr | None = Field(default=None, alias="APICURIO_TOKEN")
    registry_username: str | None = Field(default=None, alias="APICURIO_USERNAME")
    registry_password: SecretStr | None = Field(default=None, alias="APICURIO_PASSWORD")
    registry_timeout: float = Field(default=10.0, alias="APICURIO_TIMEOUT")

    # ── Broker ────────────────────────────────────────────────────────────────
    rabbitmq_url: str = Field(alias="RABBITMQ_URL")
    exchange: str = Field(default="event-exchange", alias="RABBITMQ_EXCHANGE")
    queue: str = Field(default="event-queue", alias="RABBITMQ_QUEUE")
    dead_letter_exchange: str | None = Field(default=None, alias="RABBITMQ_DLX")
    dead_letter_queue: str | None = Field(default=None, alias="RABBITMQ_DLQ")

    # ── Pub/sub behaviour ─────────────────────────────────────────────────────
    prefetch: int = Field(default=10, alias="SCHEMABUS_PREFETCH", ge=0)
    validate_payloads: bool = Field(default=True, alias="SCHEMABUS_VALIDATE")
    handler_attempts: int = Field(default=1, alias="SCHEMABUS_HANDLER_ATTEMPTS", ge=1)

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("registry_url", "rabbitmq_url")
    @classmethod
    def require_value(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("dead_letter_exchange", "dead_letter_queue", mode="before")
    @classmethod
    def empty_as_none(cls, v: str | None) -> str | None:
        return v or None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def topology(self) -> "Topology":
        from schemabus.tier4_advanced.messaging import Topology

        return Topology(
            exchange=self.exchange,
            queue=self.queue,
            dead_letter_exchange=self.dead_letter_exchange,
            dead_letter_queue=self.dead_letter_queue,
        )


def load_config(**overrides: object) -> BusConfig:
    """
    Build a BusConfig, turning pydantic's errors into ConfigurationError
    that names every missing or invalid variable.
    """
    try:
        return BusConfig(**overrides)
    except PydanticValidationError as exc:
        problems = []
        for err in exc.errors():
            name = ".".join(str(loc) for loc in err["loc"])
            problems.append(name if err["type"] == "missing" else f"{name} ({err['msg']})")
        raise ConfigurationError(
            user_message="Invalid or missing configuration: " + ", ".join(problems),
            problems=problems,
        ) from exc


@lru_cache(maxsize=1)
def get_config() -> BusConfig:
    """
    Return the singleton bus config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return load_config()


def _reset_config() -> None:
    """For tests: clear the config cache."""
    get_config.cache_clear()


__all__ = ["BusConfig", "get_config", "load_config"]
