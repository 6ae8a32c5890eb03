from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenguard.config import Settings, get_settings, reset_settings_cache
from tokenguard.logging import get_logger
from tokenguard.service.blacklist import BlacklistStore
from tokenguard.service.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    ResilientCache,
)
from tokenguard.service.families import TokenFamilyRegistry
from tokenguard.service.security_events import SecurityEventLog, UserActivityLog
from tokenguard.service.sessions import SessionStore
from tokenguard.service.token_info import TokenInfoCache
from tokenguard.service.tokens import TokenService
from tokenguard.storage.cache import CacheBackend
from tokenguard.storage.memory import MemoryCache
from tokenguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CACHE_RESOURCE = "cache"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the shared cache, breaker and token lifecycle components."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.backend: CacheBackend = self._build_backend()
        self.breaker = CircuitBreaker.get_or_create(
            CACHE_RESOURCE,
            CircuitBreakerConfig(
                failure_threshold=self.settings.circuit_failure_threshold,
                window_seconds=self.settings.circuit_window_seconds,
                cooldown_seconds=self.settings.circuit_cooldown_seconds,
                call_timeout=self.settings.cache_operation_timeout,
            ),
        )
        self.cache = ResilientCache(self.backend, self.breaker)

        namespace = self.settings.cache_namespace
        self.blacklist = BlacklistStore(self.cache, namespace)
        self.families = TokenFamilyRegistry(self.cache, namespace)
        self.token_info = TokenInfoCache(self.cache, namespace)
        self.user_activity = UserActivityLog(
            self.cache,
            namespace,
            max_entries=self.settings.user_activity_max_entries,
            ttl_seconds=self.settings.user_activity_ttl_seconds,
        )
        self.sessions = SessionStore(
            self.cache,
            namespace,
            default_ttl=self.settings.session_ttl_seconds,
            activity=self.user_activity,
        )
        self.security_events = SecurityEventLog(
            self.cache,
            namespace,
            max_entries=self.settings.security_event_max_entries,
            ttl_seconds=self.settings.security_event_ttl_seconds,
        )
        self.tokens = TokenService(
            self.cache,
            self.settings,
            blacklist=self.blacklist,
            families=self.families,
            events=self.security_events,
            token_info=self.token_info,
        )
        logger.info(
            "runtime_init_completed",
            backend=type(self.backend).__name__,
            degraded_verification=self.settings.degraded_verification.value,
        )

    def _build_backend(self) -> CacheBackend:
        if self.settings.use_memory_cache:
            return MemoryCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.cache_operation_timeout,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and rotation; start Redis or set "
                "TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for a local in-memory fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; blacklist, token families "
                "and sessions are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    def health(self) -> dict:
        return {
            "backend": type(self.backend).__name__,
            "circuit_breakers": CircuitBreaker.get_all_states(),
        }

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.backend, MemoryCache):
            asyncio.run(runtime.close())
        CircuitBreaker._instances.pop(CACHE_RESOURCE, None)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
