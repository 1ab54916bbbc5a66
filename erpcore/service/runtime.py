from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from erpcore.config import Settings, get_settings, reset_settings_cache
from erpcore.logging import get_logger
from erpcore.service.audit import AuditLog
from erpcore.service.auth import AuthService
from erpcore.service.email import EmailService
from erpcore.service.guard import AuthorizationGuard
from erpcore.service.passwords import PasswordService
from erpcore.service.rate_limit import (
    AuthRateLimiter,
    InMemoryRateCounter,
    RateCounter,
    RedisRateCounter,
)
from erpcore.service.sessions import SessionService
from erpcore.service.tokens import TokenIssuer
from erpcore.storage.memory import MemoryStore
from erpcore.storage.postgres import PostgresStore
from erpcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Explicit container for every service the HTTP layer needs."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode: TestClient requests run on separate loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate limits "
                    "are held in process memory only."
                ),
                mode=fallback_mode,
            )

        self.audit = AuditLog(self.store)
        self.passwords = PasswordService(
            time_cost=self.settings.password_hash_cost,
            memory_cost_kib=self.settings.password_hash_memory_kib,
        )
        self.tokens = TokenIssuer(self.settings, self.store)
        self.sessions = SessionService(self.settings, self.cache)
        self.rate_counter: RateCounter = (
            RedisRateCounter(self.cache) if self.cache else InMemoryRateCounter()
        )
        self.rate_limiter = AuthRateLimiter(
            self.rate_counter,
            max_attempts=self.settings.auth_rate_limit_max_attempts,
            window_seconds=self.settings.auth_rate_limit_window_seconds,
            audit=self.audit,
        )
        self.email = EmailService.from_settings(self.settings)
        self.guard = AuthorizationGuard(self.audit)
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            tokens=self.tokens,
            sessions=self.sessions,
            audit=self.audit,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            require_email_verification=self.settings.require_email_verification,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
