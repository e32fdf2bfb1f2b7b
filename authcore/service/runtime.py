from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.credentials import CredentialCodec
from authcore.service.email import EmailService
from authcore.service.guard import RequestGuard
from authcore.storage.memory import MemoryCache, MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        session_ttl = self.settings.token_ttl_hours * 3600
        self.cache: Union[RedisCache, MemoryCache] = self._build_cache(session_ttl)

        self.codec = CredentialCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl_seconds=session_ttl,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            verification_ttl_hours=self.settings.verification_token_ttl_hours,
            password_reset_ttl_hours=self.settings.password_reset_token_ttl_hours,
        )
        self.auth = AuthService(
            self.store,
            self.store,
            self.cache,
            self.cache,
            self.email,
            self.codec,
            default_role=self.settings.default_role,
            verification_ttl=timedelta(hours=self.settings.verification_token_ttl_hours),
            password_reset_ttl=timedelta(hours=self.settings.password_reset_token_ttl_hours),
        )
        self.guard = RequestGuard(
            self.codec,
            self.cache,
            self.cache,
            allow_sessionless=self.settings.allow_sessionless_tokens,
        )
        if self.settings.allow_sessionless_tokens:
            logger.warning(
                "sessionless_tokens_enabled",
                message="Tokens without a session id bypass session checks; set ALLOW_SESSIONLESS_TOKENS=false to reject them.",
            )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
        )

    def _build_cache(self, session_ttl: int) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_timeout_seconds,
                    session_ttl_seconds=session_ttl,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if (
            not self.settings.test_mode
            and not self.settings.allow_redis_fallback_dev
            and not self.settings.use_memory_store
        ):
            raise RuntimeError(
                "Redis is required for sessions and token revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "memory_store_selected",
            message="Sessions and revocations are held in process memory and are lost on restart.",
        )
        return MemoryCache(session_ttl_seconds=session_ttl)

    async def health(self) -> dict:
        status = {"store": "ok", "cache": "ok"}
        try:
            await asyncio.to_thread(self.store.ping)
        except Exception as exc:
            logger.error("health_store_failed", error=str(exc))
            status["store"] = "unavailable"
        try:
            await self.cache.ping()
        except Exception as exc:
            logger.error("health_cache_failed", error=str(exc))
            status["cache"] = "unavailable"
        return status

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
