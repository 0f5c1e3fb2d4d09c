from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatgate.config import get_settings, reset_settings_cache
from chatgate.logging import get_logger
from chatgate.service.auth import AuthService
from chatgate.service.crypto import SecretBox, SecretDecryptionError
from chatgate.service.oidc import ClientCredentials, OIDCClient
from chatgate.service.realtime import ChatHub
from chatgate.service.sessions import SessionManager
from chatgate.service.tokens import SessionTokenCodec
from chatgate.storage.memory import MemoryStore
from chatgate.storage.memory_cache import MemoryCache
from chatgate.storage.oidc_state import OIDCStateStore
from chatgate.storage.redis_cache import KeyValueCache, RedisCache
from chatgate.storage.session_store import SessionStore

logger = get_logger(__name__)

OIDC_CONFIG_NAME = "oidc"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryStore(
            data_dir=None if self.settings.test_mode else self.settings.data_dir
        )
        self.secret_box = SecretBox(
            self.settings.encryption_key or self.settings.session_secret
        )
        self.cache: KeyValueCache = self._build_cache()

        self.codec = SessionTokenCodec(
            self.settings.session_secret,
            issuer=self.settings.session_issuer,
            audience=self.settings.session_audience,
            leeway_seconds=self.settings.token_clock_skew_seconds,
        )
        self.sessions = SessionManager(
            SessionStore(self.cache),
            self.codec,
            timeout_seconds=self.settings.session_timeout_seconds,
            refresh_threshold_seconds=self.settings.session_refresh_threshold_seconds,
            strict_refresh=self.settings.strict_session_refresh,
        )
        self.states = OIDCStateStore(
            self.cache, ttl_seconds=self.settings.oidc_state_ttl_seconds
        )
        self.oidc = OIDCClient(
            self.settings.resolved_oidc_issuer,
            self.client_credentials,
            self.settings.resolved_redirect_uri,
            scopes=self.settings.oidc_scopes,
            timeout=self.settings.oidc_http_timeout_seconds,
        )
        self.auth = AuthService(self.store, self.oidc, self.states, self.sessions)
        self.hub = ChatHub(
            self.store, idle_timeout_seconds=self.settings.ws_idle_timeout_seconds
        )
        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            oidc_issuer=self.settings.resolved_oidc_issuer,
        )

    def _build_cache(self) -> KeyValueCache:
        if self.settings.use_memory_cache:
            return MemoryCache()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and login state; start Redis or set "
                "USE_MEMORY_CACHE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error
        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; sessions are process-local.",
            mode=fallback_mode,
        )
        return MemoryCache()

    def client_credentials(self) -> Optional[ClientCredentials]:
        """Resolve the provider client: admin-saved blob, then environment."""
        blob = self.store.get_config(OIDC_CONFIG_NAME) or {}
        client_id = blob.get("client_id") or self.settings.oidc_client_id
        if not client_id:
            return None
        secret: Optional[str] = None
        encrypted = blob.get("client_secret_encrypted") or self.settings.oidc_client_secret_encrypted
        if encrypted:
            try:
                secret = self.secret_box.decrypt(encrypted)
            except SecretDecryptionError:
                logger.error("oidc_client_secret_unreadable")
        if secret is None:
            secret = self.settings.oidc_client_secret
        return ClientCredentials(client_id=client_id, client_secret=secret)

    def save_oidc_client(self, client_id: str, client_secret: Optional[str]) -> None:
        blob = self.store.get_config(OIDC_CONFIG_NAME) or {}
        blob["client_id"] = client_id
        if client_secret:
            blob["client_secret_encrypted"] = self.secret_box.encrypt(client_secret)
        self.store.set_config(OIDC_CONFIG_NAME, blob)
        self.oidc.reset()
        logger.info("oidc_client_config_updated", client_id=client_id)

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
