from __future__ import annotations

import os
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class SessionLimitPolicy(str, Enum):
    """What happens when an account already holds the maximum number of sessions."""

    EVICT_OLDEST = "evict_oldest"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class Settings(BaseModel):
    """Engine settings, validated once when the process starts."""

    # Identity provider
    provider_issuer: str = env_field(
        "https://appleid.apple.com",
        "PROVIDER_ISSUER",
        description="Expected `iss` claim of provider ID tokens",
    )
    client_id: str = env_field(
        "", "OAUTH_CLIENT_ID", description="Client identifier, also the expected `aud`"
    )
    client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    authorization_endpoint: str = env_field(
        "https://appleid.apple.com/auth/authorize", "OAUTH_AUTHORIZATION_ENDPOINT"
    )
    token_endpoint: str = env_field(
        "https://appleid.apple.com/auth/token", "OAUTH_TOKEN_ENDPOINT"
    )
    redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    scope: str = env_field("openid email", "OAUTH_SCOPE")
    response_mode: str | None = env_field(
        None,
        "OAUTH_RESPONSE_MODE",
        description="Optional response_mode parameter, e.g. form_post",
    )
    # Access tokens issued by this engine
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Session and refresh token lifetime",
    )
    # Sign-in flow
    pending_auth_ttl_seconds: int = env_field(
        600,
        "PENDING_AUTH_TTL_SECONDS",
        description="How long a PKCE state/verifier pair stays redeemable",
    )
    clock_skew_seconds: int = env_field(
        30, "CLOCK_SKEW_SECONDS", description="Tolerance for exp/iat comparisons"
    )
    max_id_token_age_seconds: int = env_field(
        600,
        "MAX_ID_TOKEN_AGE_SECONDS",
        description="Reject ID tokens issued longer ago than this",
    )
    # Lockout
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Consecutive failures that trigger a lockout"
    )
    lockout_base_duration_seconds: int = env_field(
        15 * 60, "LOCKOUT_BASE_DURATION_SECONDS", description="Duration of the first lockout"
    )
    lockout_multiplier: float = env_field(
        2.0, "LOCKOUT_MULTIPLIER", description="Growth factor between consecutive lockouts"
    )
    lockout_max_duration_seconds: int = env_field(
        24 * 60 * 60, "LOCKOUT_MAX_DURATION_SECONDS", description="Upper bound on any lockout"
    )
    lockout_attempt_window_seconds: int = env_field(
        15 * 60,
        "LOCKOUT_ATTEMPT_WINDOW_SECONDS",
        description="Failures further apart than this restart the count; 0 disables",
    )
    # Sessions
    max_concurrent_sessions: int = env_field(
        5, "MAX_CONCURRENT_SESSIONS", description="Active sessions allowed per account"
    )
    session_limit_policy: SessionLimitPolicy = env_field(
        SessionLimitPolicy.EVICT_OLDEST,
        "SESSION_LIMIT_POLICY",
        description="evict_oldest or reject",
    )
    # Collaborator timeouts
    repository_timeout_seconds: float = env_field(
        5.0, "REPOSITORY_TIMEOUT_SECONDS", description="Deadline for each storage call"
    )
    provider_timeout_seconds: float = env_field(
        15.0, "PROVIDER_TIMEOUT_SECONDS", description="Deadline for the code exchange"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")

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

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or len(value) < _MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be set to at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("redirect_uri")
    @classmethod
    def _validate_redirect_uri(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return validate_redirect_uri(value)

    @field_validator("session_limit_policy")
    @classmethod
    def _validate_policy(cls, value: SessionLimitPolicy) -> SessionLimitPolicy:
        return SessionLimitPolicy(value)

    @field_validator(
        "lockout_threshold",
        "max_concurrent_sessions",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "pending_auth_ttl_seconds",
        "lockout_base_duration_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "clock_skew_seconds",
        "max_id_token_age_seconds",
        "lockout_attempt_window_seconds",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("repository_timeout_seconds", "provider_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("lockout_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("lockout multiplier must be at least 1")
        return value

    @model_validator(mode="after")
    def _validate_lockout_bounds(self) -> "Settings":
        if self.lockout_max_duration_seconds < self.lockout_base_duration_seconds:
            raise ValueError(
                "LOCKOUT_MAX_DURATION_SECONDS must not be below LOCKOUT_BASE_DURATION_SECONDS"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            provider_issuer=_settings_cache.provider_issuer,
            session_limit_policy=_settings_cache.session_limit_policy.value,
            max_concurrent_sessions=_settings_cache.max_concurrent_sessions,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
