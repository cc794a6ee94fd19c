from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger
from authcore.storage.cache_keys import CacheTTL

logger = get_logger(__name__)


class IdentityProviderKind(str, Enum):
    """Backends that can send/verify OTPs and validate OAuth tokens."""

    SUPABASE = "supabase"
    LOCAL = "local"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    require_cache: bool = env_field(
        False,
        "REQUIRE_CACHE",
        description="Abort startup when the cache probe fails instead of running with the cache disabled",
    )
    store_operation_timeout_seconds: float = env_field(
        10.0,
        "STORE_OPERATION_TIMEOUT_SECONDS",
        description="Deadline for one store transaction; a write that misses it fails with 503",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(7 * 24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")

    # Cache lifetimes
    token_cache_ttl_seconds: int = env_field(CacheTTL.TOKEN_DECODED, "TOKEN_CACHE_TTL_SECONDS")
    token_blacklist_ttl_seconds: int = env_field(
        CacheTTL.TOKEN_BLACKLIST,
        "TOKEN_BLACKLIST_TTL_SECONDS",
        description="Must be at least the longest access token lifetime",
    )
    user_cache_ttl_seconds: int = env_field(CacheTTL.USER_DATA, "USER_CACHE_TTL_SECONDS")
    session_cache_ttl_seconds: int = env_field(CacheTTL.SESSION, "SESSION_CACHE_TTL_SECONDS")
    blacklist_fail_closed: bool = env_field(
        False,
        "BLACKLIST_FAIL_CLOSED",
        description="Treat tokens as revoked when the blacklist cannot be read",
    )
    cache_operation_timeout_seconds: float = env_field(5.0, "CACHE_OPERATION_TIMEOUT_SECONDS")
    cache_lock_ttl_seconds: int = env_field(10, "CACHE_LOCK_TTL_SECONDS")

    # OTP throttling
    otp_max_sends: int = env_field(3, "OTP_MAX_SENDS")
    otp_send_window_seconds: int = env_field(600, "OTP_SEND_WINDOW_SECONDS")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    otp_expires_in_seconds: int = env_field(600, "OTP_EXPIRES_IN_SECONDS")

    # Identity provider
    identity_provider: IdentityProviderKind = env_field(
        IdentityProviderKind.SUPABASE, "IDENTITY_PROVIDER"
    )
    supabase_url: str | None = env_field(None, "SUPABASE_URL")
    supabase_anon_key: str | None = env_field(None, "SUPABASE_ANON_KEY")
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    local_otp_code: str = env_field(
        "123456",
        "LOCAL_OTP_CODE",
        description="Code accepted by the local identity provider",
    )

    default_role: str = env_field("RIDER", "DEFAULT_ROLE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")

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

    @field_validator("identity_provider")
    @classmethod
    def _validate_identity_provider(cls, value: IdentityProviderKind) -> IdentityProviderKind:
        return IdentityProviderKind(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("default_role")
    @classmethod
    def _upper_role(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                logger.warning("jwt_secret_short", length=len(self.jwt_secret))
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Tokens signed with a generated secret only live as long as this process
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @model_validator(mode="after")
    def _check_blacklist_ttl(self) -> "Settings":
        if self.token_blacklist_ttl_seconds < self.access_token_ttl_minutes * 60:
            logger.warning(
                "blacklist_ttl_shorter_than_access_ttl",
                blacklist_ttl_seconds=self.token_blacklist_ttl_seconds,
                access_token_ttl_minutes=self.access_token_ttl_minutes,
            )
            self.token_blacklist_ttl_seconds = self.access_token_ttl_minutes * 60
        return self


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
