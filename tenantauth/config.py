from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

DAY = 24 * 60 * 60
HOUR = 60 * 60
MINUTE = 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service.

    Every field names the environment variable it is read from. Durations are
    in seconds.
    """

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process stores, no SMTP).",
    )

    # Server
    server_https: bool = env_field(True, "SERVER_HTTPS")
    app_base_url: str = env_field("https://localhost:3010", "APP_BASE_URL")
    allowed_origins: list[str] = env_field(
        [],
        "ALLOWED_ORIGINS",
        description="Comma separated origins accepted for callback and redirect URLs",
    )

    # Cookies & headers
    session_cookie_name: str = env_field("affine_session", "SESSION_COOKIE_NAME")
    user_cookie_name: str = env_field("affine_user_id", "USER_COOKIE_NAME")
    csrf_cookie_name: str = env_field("affine_csrf_token", "CSRF_COOKIE_NAME")
    csrf_strict_sign_out: bool = env_field(
        False,
        "CSRF_STRICT_SIGN_OUT",
        description="Reject sign-out requests without a matching CSRF header",
    )

    # Sessions
    session_ttl_seconds: int = env_field(15 * DAY, "SESSION_TTL_SECONDS")
    session_ttr_seconds: int = env_field(
        7 * DAY,
        "SESSION_TTR_SECONDS",
        description="Refresh a session once its remaining lifetime drops below this",
    )

    # Administrator step-up
    admin_session_ttl_seconds: int = env_field(12 * HOUR, "ADMIN_SESSION_TTL_SECONDS")
    admin_mfa_challenge_ttl_seconds: int = env_field(
        10 * MINUTE, "ADMIN_MFA_CHALLENGE_TTL_SECONDS"
    )
    admin_step_up_ttl_seconds: int = env_field(15 * MINUTE, "ADMIN_STEP_UP_TTL_SECONDS")
    admin_trusted_device_ttl_seconds: int = env_field(
        30 * DAY, "ADMIN_TRUSTED_DEVICE_TTL_SECONDS"
    )

    # Passwordless / handoff / oauth
    magic_link_ttl_seconds: int = env_field(30 * MINUTE, "MAGIC_LINK_TTL_SECONDS")
    open_app_code_ttl_seconds: int = env_field(5 * MINUTE, "OPEN_APP_CODE_TTL_SECONDS")
    oauth_state_ttl_seconds: int = env_field(3 * HOUR, "OAUTH_STATE_TTL_SECONDS")
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Allow unknown emails to create an account on first sign-in",
    )

    # Client version control
    client_version_control_enabled: bool = env_field(False, "CLIENT_VERSION_CONTROL")
    client_version_requirement: str = env_field(
        ">=0.25.0", "CLIENT_VERSION_REQUIREMENT"
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(
        None,
        "OAUTH_REDIRECT_URI",
        description="Provider callback URL; defaults to <APP_BASE_URL>/oauth/callback",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Workspace", "EMAIL_FROM_NAME")

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

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def origins(self) -> list[str]:
        """Allowed origins, always including the app's own origin."""
        parsed = urlparse(self.app_base_url)
        own = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else None
        result = list(self.allowed_origins)
        if own and own not in result:
            result.insert(0, own)
        return result


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
