from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from routeflow.logging import get_logger

logger = get_logger(__name__)


class BackendTransportMode(str, Enum):
    """How adapters reach model providers."""

    BEDROCK = "bedrock"
    STUB = "stub"


DEFAULT_BEDROCK_ENDPOINT_TEMPLATE = (
    "https://bedrock-runtime.{region}.amazonaws.com/model/{model_id}/invoke"
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the router, adapters and workflow engine."""

    # Caches: in-memory when no Redis URL is configured
    redis_url: str | None = env_field(None, "REDIS_URL")
    # Backends
    backend_transport: BackendTransportMode = env_field(
        BackendTransportMode.STUB,
        "BACKEND_TRANSPORT",
        description="bedrock sends real HTTP requests; stub returns canned bodies",
    )
    bedrock_region: str = env_field("ap-northeast-2", "BEDROCK_REGION")
    bedrock_endpoint_template: str = env_field(
        DEFAULT_BEDROCK_ENDPOINT_TEMPLATE, "BEDROCK_ENDPOINT_TEMPLATE"
    )
    bedrock_api_key: str | None = env_field(None, "BEDROCK_API_KEY")
    request_timeout_seconds: float = env_field(60.0, "REQUEST_TIMEOUT_SECONDS")
    # Routing
    route_cache_ttl_seconds: int = env_field(300, "ROUTE_CACHE_TTL_SECONDS")
    health_stale_seconds: int = env_field(60, "HEALTH_STALE_SECONDS")
    default_estimated_tokens: int = env_field(1000, "DEFAULT_ESTIMATED_TOKENS")
    default_estimated_images: int = env_field(1, "DEFAULT_ESTIMATED_IMAGES")
    output_token_ratio: float = env_field(
        0.3,
        "OUTPUT_TOKEN_RATIO",
        description="Expected output tokens as a fraction of input tokens",
    )
    # Workflow engine
    workflow_timeout_ms: int = env_field(300_000, "WORKFLOW_TIMEOUT_MS")
    node_timeout_ms: int = env_field(60_000, "NODE_TIMEOUT_MS")
    workflow_state_ttl_seconds: int = env_field(1800, "WORKFLOW_STATE_TTL_SECONDS")
    # Budget
    budget_daily_limit: float = env_field(10.0, "BUDGET_DAILY_LIMIT")
    budget_monthly_limit: float = env_field(100.0, "BUDGET_MONTHLY_LIMIT")
    budget_per_request_limit: float = env_field(0.5, "BUDGET_PER_REQUEST_LIMIT")
    budget_alert_threshold_pct: int = env_field(80, "BUDGET_ALERT_THRESHOLD_PCT")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("backend_transport")
    @classmethod
    def _validate_transport(cls, value: BackendTransportMode) -> BackendTransportMode:
        return BackendTransportMode(value)

    @field_validator("redis_url", "bedrock_api_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator(
        "request_timeout_seconds",
        "route_cache_ttl_seconds",
        "health_stale_seconds",
        "workflow_timeout_ms",
        "node_timeout_ms",
        "workflow_state_ttl_seconds",
    )
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("default_estimated_tokens", "default_estimated_images")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("output_token_ratio")
    @classmethod
    def _validate_ratio(cls, value: float) -> float:
        if not 0 <= value <= 10:
            raise ValueError("output_token_ratio must be between 0 and 10")
        return value

    @field_validator("budget_alert_threshold_pct")
    @classmethod
    def _validate_threshold(cls, value: int) -> int:
        if not 0 < value <= 100:
            raise ValueError("budget_alert_threshold_pct must be in (0, 100]")
        return value

    @field_validator("bedrock_endpoint_template")
    @classmethod
    def _validate_template(cls, value: str) -> str:
        if "{model_id}" not in value:
            logger.warning("bedrock_endpoint_template_missing_model_id", template=value)
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
