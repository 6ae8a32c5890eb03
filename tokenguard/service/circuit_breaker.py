"""Circuit breaker around cache backend calls.

Every call made by the token subsystem goes through a named breaker. Breaker
state is process-local: two processes may briefly disagree about whether the
cache is healthy, which only changes latency and fallback behaviour.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Deque, Optional, Sequence, TypeVar

from redis.exceptions import RedisError

from tokenguard.logging import get_logger
from tokenguard.service.errors import (
    CacheTimeoutError,
    CacheUnavailableError,
    CircuitOpenError,
)
from tokenguard.storage.cache import CacheBackend, CacheOp, SwapResult

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"  # Normal operation, calls pass through
    OPEN = "open"  # Failure threshold exceeded, calls short-circuit
    HALF_OPEN = "half_open"  # Cooldown elapsed, one trial call allowed


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5  # Failures inside the window before opening
    window_seconds: float = 60.0  # Rolling window for counting failures
    cooldown_seconds: float = 30.0  # Time spent OPEN before probing
    call_timeout: Optional[float] = 0.25  # Deadline per call; None disables
    excluded_exceptions: tuple = ()  # Exceptions that don't count as failures


@dataclass
class CircuitBreakerMetrics:
    state: CircuitState = CircuitState.CLOSED
    failure_times: Deque[float] = field(default_factory=deque)
    success_count: int = 0
    timeout_count: int = 0
    rejected_count: int = 0
    last_failure_time: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False


class CircuitBreaker:
    """Per-resource breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN."""

    # Class-level registry of breakers by resource name
    _instances: ClassVar[dict[str, "CircuitBreaker"]] = {}

    def __init__(
        self,
        resource: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.resource = resource
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = CircuitBreakerMetrics()
        self._lock = asyncio.Lock()

    @classmethod
    def get_or_create(
        cls,
        resource: str,
        config: CircuitBreakerConfig | None = None,
    ) -> "CircuitBreaker":
        """Get existing circuit breaker or create new one."""
        if resource not in cls._instances:
            cls._instances[resource] = cls(resource, config)
        return cls._instances[resource]

    @classmethod
    def get_all_states(cls) -> dict[str, dict]:
        """Health view of every registered breaker."""
        return {name: cb.get_state() for name, cb in list(cls._instances.items())}

    @classmethod
    async def reset_all(cls) -> None:
        for cb in list(cls._instances.values()):
            await cb.reset()

    @property
    def state(self) -> CircuitState:
        return self._metrics.state

    @property
    def failure_count(self) -> int:
        self._prune_failures()
        return len(self._metrics.failure_times)

    def get_state(self) -> dict:
        return {
            "resource": self.resource,
            "state": self._metrics.state.value,
            "failure_count": self.failure_count,
            "success_count": self._metrics.success_count,
            "timeout_count": self._metrics.timeout_count,
            "rejected_count": self._metrics.rejected_count,
            "last_failure_time": self._metrics.last_failure_time,
            "opened_at": self._metrics.opened_at,
            "healthy": self._metrics.state == CircuitState.CLOSED,
        }

    async def reset(self) -> None:
        async with self._lock:
            self._metrics = CircuitBreakerMetrics()
        logger.info("circuit_breaker_reset", resource=self.resource)

    async def force_open(self) -> None:
        async with self._lock:
            self._open()
        logger.warning("circuit_breaker_forced_open", resource=self.resource)

    async def force_close(self) -> None:
        await self.reset()

    def _prune_failures(self) -> None:
        horizon = self._clock() - self.config.window_seconds
        failures = self._metrics.failure_times
        while failures and failures[0] < horizon:
            failures.popleft()

    def _open(self) -> None:
        self._metrics.state = CircuitState.OPEN
        self._metrics.opened_at = self._clock()
        self._metrics.trial_in_flight = False

    async def _before_call(self) -> None:
        async with self._lock:
            metrics = self._metrics
            if metrics.state == CircuitState.CLOSED:
                return
            if metrics.state == CircuitState.OPEN:
                elapsed = self._clock() - (metrics.opened_at or 0.0)
                if elapsed < self.config.cooldown_seconds:
                    metrics.rejected_count += 1
                    raise CircuitOpenError(
                        self.resource, self.config.cooldown_seconds - elapsed
                    )
                logger.info("circuit_breaker_half_open", resource=self.resource)
                metrics.state = CircuitState.HALF_OPEN
                metrics.trial_in_flight = False
            # HALF_OPEN admits exactly one trial call at a time
            if metrics.trial_in_flight:
                metrics.rejected_count += 1
                raise CircuitOpenError(self.resource, 0.0)
            metrics.trial_in_flight = True

    async def record_success(self) -> None:
        async with self._lock:
            metrics = self._metrics
            metrics.success_count += 1
            if metrics.state == CircuitState.HALF_OPEN:
                logger.info("circuit_breaker_closed", resource=self.resource)
                self._metrics = CircuitBreakerMetrics(success_count=metrics.success_count)

    async def record_failure(self, exception: BaseException) -> None:
        if isinstance(exception, self.config.excluded_exceptions):
            await self._release_trial()
            return

        async with self._lock:
            metrics = self._metrics
            if metrics.state == CircuitState.OPEN:
                # Late failures must not push the trial time further out
                return
            now = self._clock()
            metrics.failure_times.append(now)
            metrics.last_failure_time = now

            if metrics.state == CircuitState.HALF_OPEN:
                logger.warning(
                    "circuit_breaker_reopened",
                    resource=self.resource,
                    error=str(exception) or type(exception).__name__,
                )
                self._open()
                return

            self._prune_failures()
            if len(metrics.failure_times) >= self.config.failure_threshold:
                logger.warning(
                    "circuit_breaker_opened",
                    resource=self.resource,
                    failures=len(metrics.failure_times),
                    window_seconds=self.config.window_seconds,
                )
                self._open()

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under the breaker.

        Raises CircuitOpenError without invoking ``fn`` while the circuit is
        open, and CacheTimeoutError when the call exceeds its deadline.
        Other exceptions are recorded and re-raised unchanged.
        """
        await self._before_call()
        try:
            if self.config.call_timeout is None:
                result = await fn(*args, **kwargs)
            else:
                result = await asyncio.wait_for(
                    fn(*args, **kwargs), timeout=self.config.call_timeout
                )
        except asyncio.TimeoutError as exc:
            self._metrics.timeout_count += 1
            await self.record_failure(exc)
            raise CacheTimeoutError(
                f"{self.resource} call exceeded {self.config.call_timeout}s",
                detail={"resource": self.resource},
            ) from exc
        except asyncio.CancelledError:
            await self._release_trial()
            raise
        except Exception as exc:
            await self.record_failure(exc)
            raise
        await self.record_success()
        return result

    async def _release_trial(self) -> None:
        async with self._lock:
            self._metrics.trial_in_flight = False


class ResilientCache:
    """CacheBackend that routes every operation through a circuit breaker.

    Backend failures surface as CacheUnavailableError (or its CircuitOpenError
    and CacheTimeoutError subclasses) so callers never see driver exceptions.
    """

    # Faults of the cache itself; programming errors propagate untouched
    BACKEND_ERRORS: tuple = (RedisError, ConnectionError, OSError)

    def __init__(self, backend: CacheBackend, breaker: CircuitBreaker) -> None:
        self.backend = backend
        self.breaker = breaker

    async def _run(self, operation: str, *args: Any) -> Any:
        fn = getattr(self.backend, operation)
        try:
            return await self.breaker.call(fn, *args)
        except CacheUnavailableError:
            raise
        except self.BACKEND_ERRORS as exc:
            logger.warning(
                "cache_operation_failed",
                resource=self.breaker.resource,
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailableError(
                f"cache {operation} failed",
                detail={"resource": self.breaker.resource, "operation": operation},
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", key)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set_with_ttl", key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        return await self._run("delete", *keys)

    async def exists(self, key: str) -> bool:
        return await self._run("exists", key)

    async def increment(self, key: str) -> int:
        return await self._run("increment", key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return await self._run("expire", key, ttl_seconds)

    async def extend_expire(self, key: str, ttl_seconds: int) -> bool:
        return await self._run("extend_expire", key, ttl_seconds)

    async def set_add(self, key: str, *members: str) -> int:
        return await self._run("set_add", key, *members)

    async def set_remove(self, key: str, *members: str) -> int:
        return await self._run("set_remove", key, *members)

    async def set_members(self, key: str) -> set[str]:
        return await self._run("set_members", key)

    async def list_push(self, key: str, *values: str) -> int:
        return await self._run("list_push", key, *values)

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        await self._run("list_trim", key, start, stop)

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        return await self._run("list_range", key, start, stop)

    async def pipeline(self, ops: Sequence[CacheOp]) -> list[Any]:
        return await self._run("pipeline", ops)

    async def swap_set_member(
        self, set_key: str, guard_key: str, old: str, new: str, ttl_seconds: int
    ) -> SwapResult:
        return await self._run("swap_set_member", set_key, guard_key, old, new, ttl_seconds)

    async def ping(self) -> bool:
        return await self._run("ping")

    async def close(self) -> None:
        await self.backend.close()
