from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from chatgate.logging import get_logger

logger = get_logger(__name__)

ENTRA_ISSUER_TEMPLATE = "https://login.microsoftonline.com/{tenant}/v2.0"
MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth gateway and chat transport."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    data_dir: str = env_field("/var/lib/chatgate", "DATA_DIR")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for the test suite; required for runtime resets.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Session token + store
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_issuer: str = env_field("chatgate", "SESSION_ISSUER")
    session_audience: str = env_field("chatgate-web", "SESSION_AUDIENCE")
    session_timeout_seconds: int = env_field(8 * 60 * 60, "SESSION_TIMEOUT_SECONDS")
    session_refresh_threshold_seconds: int = env_field(
        60 * 60, "SESSION_REFRESH_THRESHOLD_SECONDS"
    )
    session_auto_refresh: bool = env_field(
        True,
        "SESSION_AUTO_REFRESH",
        description="Rotate near-expiry sessions on any cookie-authenticated request",
    )
    strict_session_refresh: bool = env_field(
        False,
        "STRICT_SESSION_REFRESH",
        description="Fail a refresh when the old session was already consumed by a concurrent refresh",
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")
    session_cookie_name: str = env_field("auth_session", "SESSION_COOKIE_NAME")
    cookie_secure: bool | None = env_field(None, "COOKIE_SECURE")

    # Identity provider
    oidc_state_ttl_seconds: int = env_field(10 * 60, "OIDC_STATE_TTL_SECONDS")
    oidc_tenant_id: str | None = env_field(None, "OIDC_TENANT_ID")
    oidc_issuer: str | None = env_field(None, "OIDC_ISSUER")
    oidc_client_id: str | None = env_field(None, "OIDC_CLIENT_ID")
    oidc_client_secret: str | None = env_field(None, "OIDC_CLIENT_SECRET")
    oidc_client_secret_encrypted: str | None = env_field(
        None, "OIDC_CLIENT_SECRET_ENCRYPTED"
    )
    oidc_redirect_uri: str | None = env_field(None, "OIDC_REDIRECT_URI")
    oidc_scopes: str = env_field("openid profile email offline_access", "OIDC_SCOPES")
    oidc_http_timeout_seconds: float = env_field(30.0, "OIDC_HTTP_TIMEOUT_SECONDS")
    encryption_key: str | None = env_field(None, "ENCRYPTION_KEY")

    post_login_redirect: str = env_field("/", "POST_LOGIN_REDIRECT")
    login_page_path: str = env_field("/login", "LOGIN_PAGE_PATH")

    # Realtime transport
    ws_idle_timeout_seconds: int = env_field(30 * 60, "WS_IDLE_TIMEOUT_SECONDS")
    ws_cleanup_interval_seconds: int = env_field(60, "WS_CLEANUP_INTERVAL_SECONDS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        if value and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value or None

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so issued cookies survive restarts
        data_dir = Path(info.data.get("data_dir") or "/var/lib/chatgate")
        secret_path = data_dir / ".session_secret"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(data_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup", error=str(exc), path=str(data_dir)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_dir), prefix=".session_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make DATA_DIR writable"
            ) from exc
        logger.warning("session_secret_generated", path=str(secret_path))
        return generated

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @property
    def resolved_oidc_issuer(self) -> str | None:
        if self.oidc_issuer:
            return self.oidc_issuer.rstrip("/")
        if self.oidc_tenant_id:
            return ENTRA_ISSUER_TEMPLATE.format(tenant=self.oidc_tenant_id)
        return None

    @property
    def resolved_redirect_uri(self) -> str:
        return self.oidc_redirect_uri or f"{self.app_base_url.rstrip('/')}/callback"


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
