from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stormcrm.logging import get_logger

logger = get_logger(__name__)


class RouteClass(str, Enum):
    """Named categories of endpoints that share one rate-limit configuration."""

    GENERAL = "general"
    AUTH = "auth"
    COSTLY = "costly"
    CAMPAIGN = "campaign"


class StoreBackend(str, Enum):
    POSTGRES = "postgres"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime settings for the request-security and storage core."""

    # Storage
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Force the in-process emulated store even when DATABASE_URL is set",
    )
    db_pool_max_size: int = env_field(20, "DB_POOL_MAX_SIZE")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_connect_timeout_seconds: float = env_field(
        2.0,
        "DB_CONNECT_TIMEOUT_SECONDS",
        description="How long a caller waits for a pooled connection before failing",
    )
    db_idle_timeout_seconds: float = env_field(30.0, "DB_IDLE_TIMEOUT_SECONDS")
    db_ssl_require: bool = env_field(False, "DB_SSL_REQUIRE")
    seed_demo_data: bool = env_field(
        True,
        "SEED_DEMO_DATA",
        description="Seed demo users, hail events and leads into the emulated store",
    )

    # Tokens. Rotating either secret invalidates every token signed with the old value.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(60 * 24 * 7, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES"
    )
    api_key_encryption_key: str | None = env_field(
        None,
        "API_KEY_ENCRYPTION_KEY",
        description="Key material for encrypting stored third-party API keys; defaults to JWT_SECRET",
    )

    # Rate limits per route class
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    auth_rate_limit_max_requests: int = env_field(5, "AUTH_RATE_LIMIT_MAX_REQUESTS")
    costly_rate_limit_window_seconds: int = env_field(
        60 * 60, "COSTLY_RATE_LIMIT_WINDOW_SECONDS"
    )
    costly_rate_limit_max_requests: int = env_field(10, "COSTLY_RATE_LIMIT_MAX_REQUESTS")
    campaign_rate_limit_window_seconds: int = env_field(
        60 * 60, "CAMPAIGN_RATE_LIMIT_WINDOW_SECONDS"
    )
    campaign_rate_limit_max_requests: int = env_field(
        20, "CAMPAIGN_RATE_LIMIT_MAX_REQUESTS"
    )

    # IP blocking
    ip_block_max_attempts: int = env_field(10, "IP_BLOCK_MAX_ATTEMPTS")
    ip_block_duration_seconds: int = env_field(60 * 60, "IP_BLOCK_DURATION_SECONDS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For hop as the client key",
    )

    # HTTP
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for the test-suite; allows runtime resets",
    )

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

    @field_validator(
        "use_memory_store",
        "db_ssl_require",
        "seed_demo_data",
        "trust_proxy_headers",
        "enable_hsts",
        "test_mode",
        mode="before",
    )
    @classmethod
    def _coerce_bool(cls, value: Any) -> bool:
        return _parse_bool(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "rate_limit_window_seconds",
        "rate_limit_max_requests",
        "auth_rate_limit_window_seconds",
        "auth_rate_limit_max_requests",
        "costly_rate_limit_window_seconds",
        "costly_rate_limit_max_requests",
        "campaign_rate_limit_window_seconds",
        "campaign_rate_limit_max_requests",
        "ip_block_max_attempts",
        "ip_block_duration_seconds",
        "db_pool_max_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        # Secrets are generated once per process when absent; every restart then
        # invalidates outstanding tokens, which is acceptable for local development.
        if not self.jwt_secret:
            self.jwt_secret = secrets.token_urlsafe(64)
            if not self.test_mode:
                logger.warning("jwt_secret_generated", reason="JWT_SECRET not set")
        if not self.refresh_token_secret:
            self.refresh_token_secret = secrets.token_urlsafe(64)
            if not self.test_mode:
                logger.warning(
                    "refresh_token_secret_generated", reason="REFRESH_TOKEN_SECRET not set"
                )
        if self.jwt_secret == self.refresh_token_secret:
            raise ValueError("JWT_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self

    @property
    def store_backend(self) -> StoreBackend:
        if self.use_memory_store or not self.database_url:
            return StoreBackend.MEMORY
        return StoreBackend.POSTGRES

    def rate_limit_for(self, route_class: RouteClass) -> tuple[int, int]:
        """Return ``(window_seconds, max_requests)`` for a route class."""

        route_class = RouteClass(route_class)
        if route_class is RouteClass.AUTH:
            return self.auth_rate_limit_window_seconds, self.auth_rate_limit_max_requests
        if route_class is RouteClass.COSTLY:
            return (
                self.costly_rate_limit_window_seconds,
                self.costly_rate_limit_max_requests,
            )
        if route_class is RouteClass.CAMPAIGN:
            return (
                self.campaign_rate_limit_window_seconds,
                self.campaign_rate_limit_max_requests,
            )
        return self.rate_limit_window_seconds, self.rate_limit_max_requests


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
