from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.exc import DBAPIError, OperationalError

from tierguard.core.config import get_settings
from tierguard.core.errors import CircuitOpenError
from tierguard.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for breaker coordination.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


def is_transient_storage_error(exc: Exception) -> bool:
    # Lost connections and timeouts are retried; constraint violations are not.
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def storage_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.storage_retry_max_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or storage_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


def retry_backoff_ms(*, job_id: str, attempt_no: int, base_ms: int, cap_ms: int) -> int:
    # Use exponential backoff with deterministic jitter to keep tests reproducible and avoid stampedes.
    base = max(1, int(base_ms))
    cap = max(base, int(cap_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    failure_window_s: int
    open_seconds: int
    half_open_trials: int


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        failure_window_s=settings.cb_failure_window_s,
        open_seconds=settings.cb_open_seconds,
        half_open_trials=settings.cb_half_open_trials,
    )


@dataclass
class CircuitBreakerState:
    # Transient per-dependency state; a fresh process starts closed.
    state: str = "closed"
    consecutive_failures: int = 0
    window_started_at: float | None = None
    opened_at: float | None = None
    half_open_trials_in_flight: int = 0
    half_open_successes: int = 0


_STATE_GAUGE = {"closed": 0.0, "half_open": 0.5, "open": 1.0}


class CircuitBreaker:
    """Per-dependency breaker: closed, open after repeated failures, half_open trials.

    ``closed -> open`` after ``failure_threshold`` consecutive failures within
    ``failure_window_s``; ``open -> half_open`` once ``open_seconds`` elapse;
    ``half_open`` admits ``half_open_trials`` trial calls and closes after that many
    consecutive successes, any trial failure reopens with a fresh cooldown.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or default_breaker_config()
        # Wall clock so state shared through Redis compares across instances.
        self._time = time_source or time.time
        self._on_transition = on_transition
        self._local_state = CircuitBreakerState()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return CircuitBreakerState()
        return CircuitBreakerState(
            state=raw.get("state", "closed"),
            consecutive_failures=int(raw.get("consecutive_failures", 0)),
            window_started_at=float(raw["window_started_at"]) if raw.get("window_started_at") else None,
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials_in_flight=int(raw.get("half_open_trials_in_flight", 0)),
            half_open_successes=int(raw.get("half_open_successes", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        # Persist breaker state in Redis to share across instances.
        if self._redis is None:
            self._local_state = state
            return
        payload = {key: "" if value is None else str(value) for key, value in asdict(state).items()}
        await self._redis.hset(self._key(), mapping=payload)
        ttl = max(self._config.open_seconds * 4, 60)
        await self._redis.expire(self._key(), ttl)

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        # Emit logs on state transitions for operator visibility.
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == "open":
                increment_counter("circuit_breaker_open_total")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE.get(target, 0.0))
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        return CircuitBreakerState(state=target, opened_at=self._time() if target == "open" else None)

    async def _advance(self, state: CircuitBreakerState) -> CircuitBreakerState:
        # Move an open breaker to half_open once its cooldown has elapsed.
        if state.state == "open" and state.opened_at is not None:
            if (self._time() - state.opened_at) >= self._config.open_seconds:
                state = await self._transition(state, "half_open")
                await self._save(state)
        return state

    async def is_open(self) -> bool:
        # Fail-fast check for submitters; does not consume a half_open trial slot.
        state = await self._advance(await self._load())
        return state.state == "open"

    async def before_call(self) -> CircuitBreakerState:
        # Decide whether calls are allowed and update half-open counters.
        state = await self._advance(await self._load())
        if state.state == "open":
            raise CircuitOpenError(self._name)
        if state.state == "half_open":
            if state.half_open_trials_in_flight >= self._config.half_open_trials:
                raise CircuitOpenError(self._name)
            state.half_open_trials_in_flight += 1
            await self._save(state)
        return state

    async def try_acquire(self) -> bool:
        try:
            await self.before_call()
        except CircuitOpenError:
            return False
        return True

    async def release_trial(self) -> None:
        # Return a half_open slot when an admitted call ends without an outcome.
        state = await self._load()
        if state.state == "half_open" and state.half_open_trials_in_flight > 0:
            state.half_open_trials_in_flight -= 1
            await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state.half_open_successes += 1
            state.half_open_trials_in_flight = max(0, state.half_open_trials_in_flight - 1)
            if state.half_open_successes >= self._config.half_open_trials:
                state = await self._transition(state, "closed")
            await self._save(state)
            return
        if state.state == "closed":
            state.consecutive_failures = 0
            state.window_started_at = None
            await self._save(state)
        # A late success from a call admitted before opening does not close the breaker.

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        if state.state == "open":
            return
        now = self._time()
        if state.window_started_at is None or (now - state.window_started_at) > self._config.failure_window_s:
            state.window_started_at = now
            state.consecutive_failures = 1
        else:
            state.consecutive_failures += 1
        if state.consecutive_failures >= self._config.failure_threshold:
            state = await self._transition(state, "open")
        await self._save(state)

    async def snapshot(self) -> dict[str, Any]:
        # Report state for ops endpoints after applying any due cooldown.
        state = await self._advance(await self._load())
        return {"name": self._name, **asdict(state)}
