from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import get_settings
from tierguard.persistence.repos import audit as audit_repo
from tierguard.services.resilience import CircuitBreaker, CircuitBreakerConfig, retry_backoff_ms
from tierguard.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

SUBMIT_ACCEPTED = "accepted"
SUBMIT_CIRCUIT_OPEN = "circuit_open"
SUBMIT_REJECTED = "rejected"

ATTEMPT_SUCCEEDED = "succeeded"
ATTEMPT_RETRY = "retry"
ATTEMPT_DEAD_LETTERED = "dead_lettered"

REASON_MAX_ATTEMPTS = "max_attempts"
REASON_CIRCUIT_OPEN = "circuit_open"
REASON_SHUTDOWN = "shutdown"

ARQ_FUNCTION_NAME = "run_job"


@dataclass(frozen=True)
class SubmitResult:
    status: str
    job_id: str | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status == SUBMIT_ACCEPTED


@dataclass
class Job:
    job_id: str
    job_type: str
    payload: dict[str, Any]
    attempts: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class AttemptResult:
    status: str
    # Delay before the next attempt when status is retry.
    delay_ms: int = 0


JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]
DeadLetterCallback = Callable[[Job, str], Awaitable[None]]


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    handler: JobHandler
    dependency: str
    on_dead_letter: DeadLetterCallback | None = None


@dataclass
class _QueueState:
    outstanding: int = 0
    idle: asyncio.Event = field(default_factory=asyncio.Event)


_arq_pool = None
_arq_pool_loop = None
_arq_lock = asyncio.Lock()


async def get_arq_pool():
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _arq_pool, _arq_pool_loop
    current_loop = asyncio.get_running_loop()
    if _arq_pool is not None and _arq_pool_loop == current_loop:
        return _arq_pool
    if _arq_pool is not None and _arq_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _arq_pool = None
    async with _arq_lock:
        if _arq_pool is None:
            settings = get_settings()
            _arq_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            _arq_pool_loop = current_loop
    return _arq_pool


class JobQueue:
    """Background execution for calls to fallible external dependencies.

    Each dependency has a circuit breaker: submissions fail fast while it is open,
    and failed attempts are retried with backoff until they dead-letter. In
    ``inline`` mode a bounded pool of asyncio workers runs jobs in process; in
    ``queue`` mode jobs go to arq and ``workers/job_worker.py`` runs the same
    attempt logic.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        mode: str | None = None,
        workers: int | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        backoff_max_ms: int | None = None,
        redis: Redis | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_dead_letter: DeadLetterCallback | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._mode = (mode or settings.job_execution_mode).lower()
        self._workers = max(1, workers or settings.job_workers)
        self._max_attempts = max(1, max_attempts or settings.job_max_attempts)
        self._backoff_ms = settings.job_backoff_ms if backoff_ms is None else backoff_ms
        self._backoff_max_ms = settings.job_backoff_max_ms if backoff_max_ms is None else backoff_max_ms
        self._redis = redis
        self._breaker_config = breaker_config
        self._time_source = time_source
        self._on_dead_letter = on_dead_letter
        self._specs: dict[str, JobSpec] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._worker_tasks: list[asyncio.Task] = []
        self._retry_tasks: dict[asyncio.Task, Job] = {}
        self._in_flight: dict[str, Job] = {}
        self._interrupted: list[Job] = []
        self._state = _QueueState()
        self._state.idle.set()
        self._started = False
        self._closing = False

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        dependency: str,
        on_dead_letter: DeadLetterCallback | None = None,
    ) -> None:
        self._specs[job_type] = JobSpec(
            job_type=job_type, handler=handler, dependency=dependency, on_dead_letter=on_dead_letter
        )
        self.breaker(dependency)

    def spec_for(self, job_type: str) -> JobSpec | None:
        return self._specs.get(job_type)

    def breaker(self, dependency: str) -> CircuitBreaker:
        breaker = self._breakers.get(dependency)
        if breaker is None:
            breaker = CircuitBreaker(
                dependency,
                redis=self._redis,
                config=self._breaker_config,
                time_source=self._time_source,
            )
            self._breakers[dependency] = breaker
        return breaker

    def breakers(self) -> list[CircuitBreaker]:
        return list(self._breakers.values())

    async def submit(self, job_type: str, payload: dict[str, Any]) -> SubmitResult:
        if self._closing:
            return SubmitResult(status=SUBMIT_REJECTED, reason="shutting_down")
        spec = self._specs.get(job_type)
        if spec is None:
            return SubmitResult(status=SUBMIT_REJECTED, reason="unknown_job_type")
        # Fail fast without queuing while the dependency is known to be down.
        if await self.breaker(spec.dependency).is_open():
            increment_counter(f"jobs_circuit_open_total.{spec.dependency}")
            return SubmitResult(status=SUBMIT_CIRCUIT_OPEN, reason=REASON_CIRCUIT_OPEN)

        job = Job(job_id=uuid4().hex, job_type=job_type, payload=dict(payload))
        if self._mode == "queue":
            return await self._enqueue_arq(job)
        if not self._started:
            await self.start()
        self._track()
        await self._queue.put(job)
        increment_counter("jobs_submitted_total")
        set_gauge("job_queue_depth", self._queue.qsize())
        return SubmitResult(status=SUBMIT_ACCEPTED, job_id=job.job_id)

    async def _enqueue_arq(self, job: Job) -> SubmitResult:
        try:
            pool = await get_arq_pool()
            await pool.enqueue_job(
                ARQ_FUNCTION_NAME,
                job.job_id,
                job.job_type,
                job.payload,
                _job_id=job.job_id,
                _queue_name=get_settings().job_queue_name,
            )
        except (OSError, ConnectionError) as exc:
            logger.error("job_enqueue_failed job_id=%s type=%s", job.job_id, job.job_type, exc_info=exc)
            return SubmitResult(status=SUBMIT_REJECTED, reason="queue_unavailable")
        increment_counter("jobs_submitted_total")
        return SubmitResult(status=SUBMIT_ACCEPTED, job_id=job.job_id)

    async def start(self) -> None:
        if self._started or self._mode == "queue":
            return
        self._started = True
        self._closing = False
        for idx in range(self._workers):
            self._worker_tasks.append(asyncio.create_task(self._worker(idx), name=f"tierguard-job-worker-{idx}"))
        logger.info("job_queue_started workers=%s max_attempts=%s", self._workers, self._max_attempts)

    async def run_attempt(self, job: Job) -> AttemptResult:
        """Run one attempt of ``job`` and decide what happens next.

        A refusal by the breaker reschedules the job without counting as a
        dependency failure; exhausted jobs are dead-lettered here.
        """
        spec = self._specs.get(job.job_type)
        if spec is None:
            await self._dead_letter(job, None, reason="unknown_job_type")
            return AttemptResult(status=ATTEMPT_DEAD_LETTERED)
        breaker = self.breaker(spec.dependency)
        job.attempts += 1
        if not await breaker.try_acquire():
            job.last_error = "circuit open"
            return await self._after_failure(job, spec, reason=REASON_CIRCUIT_OPEN)
        try:
            await spec.handler(job.payload)
        except asyncio.CancelledError:
            await breaker.release_trial()
            raise
        except Exception as exc:  # noqa: BLE001 - every handler failure counts against the dependency
            await breaker.record_failure()
            job.last_error = repr(exc)
            logger.warning(
                "job_attempt_failed job_id=%s type=%s attempt=%s error=%s",
                job.job_id,
                job.job_type,
                job.attempts,
                job.last_error,
            )
            return await self._after_failure(job, spec, reason=REASON_MAX_ATTEMPTS)
        await breaker.record_success()
        increment_counter(f"jobs_succeeded_total.{job.job_type}")
        return AttemptResult(status=ATTEMPT_SUCCEEDED)

    async def _after_failure(self, job: Job, spec: JobSpec, *, reason: str) -> AttemptResult:
        if job.attempts >= self._max_attempts:
            await self._dead_letter(job, spec, reason=reason)
            return AttemptResult(status=ATTEMPT_DEAD_LETTERED)
        increment_counter("jobs_retried_total")
        delay_ms = retry_backoff_ms(
            job_id=job.job_id,
            attempt_no=job.attempts,
            base_ms=self._backoff_ms,
            cap_ms=self._backoff_max_ms,
        )
        return AttemptResult(status=ATTEMPT_RETRY, delay_ms=delay_ms)

    async def _dead_letter(self, job: Job, spec: JobSpec | None, *, reason: str) -> None:
        dependency = spec.dependency if spec else "unknown"
        increment_counter(f"jobs_dead_lettered_total.{reason}")
        logger.error(
            "job_dead_lettered job_id=%s type=%s dependency=%s attempts=%s reason=%s last_error=%s",
            job.job_id,
            job.job_type,
            dependency,
            job.attempts,
            reason,
            job.last_error,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    audit_repo.add_dead_letter(
                        session,
                        job_id=job.job_id,
                        job_type=job.job_type,
                        dependency=dependency,
                        payload_json=job.payload,
                        attempts=job.attempts,
                        reason=reason,
                        last_error=job.last_error,
                    )
        except SQLAlchemyError:
            # The ERROR log above keeps the payload recoverable when the row cannot be written.
            logger.exception("job_dead_letter_not_persisted job_id=%s payload=%s", job.job_id, job.payload)
        for callback in (spec.on_dead_letter if spec else None, self._on_dead_letter):
            if callback is None:
                continue
            try:
                await callback(job, reason)
            except Exception:  # noqa: BLE001 - callbacks must not break the queue
                logger.exception("job_dead_letter_callback_failed job_id=%s", job.job_id)

    async def _worker(self, idx: int) -> None:
        while True:
            job = await self._queue.get()
            self._in_flight[job.job_id] = job
            set_gauge("job_queue_depth", self._queue.qsize())
            try:
                await self._process(job)
            except asyncio.CancelledError:
                self._interrupted.append(job)
                raise
            except Exception:  # noqa: BLE001 - keep the worker alive
                logger.exception("job_worker_error worker=%s job_id=%s", idx, job.job_id)
                self._done()
            finally:
                self._in_flight.pop(job.job_id, None)
                self._queue.task_done()

    async def _process(self, job: Job) -> None:
        result = await self.run_attempt(job)
        if result.status != ATTEMPT_RETRY:
            self._done()
            return
        if self._closing:
            await self._dead_letter(job, self._specs.get(job.job_type), reason=REASON_SHUTDOWN)
            self._done()
            return
        task = asyncio.create_task(self._requeue_after(job, result.delay_ms))
        self._retry_tasks[task] = job
        task.add_done_callback(lambda done: self._retry_tasks.pop(done, None))

    async def _requeue_after(self, job: Job, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        await self._queue.put(job)

    def _track(self) -> None:
        self._state.outstanding += 1
        self._state.idle.clear()

    def _done(self) -> None:
        self._state.outstanding = max(0, self._state.outstanding - 1)
        if self._state.outstanding == 0:
            self._state.idle.set()

    async def join(self) -> None:
        # Wait until every accepted job has succeeded or dead-lettered.
        await self._state.idle.wait()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting work, drain in-flight jobs and dead-letter pending retries."""
        self._closing = True
        if not self._started:
            return
        pending = list(self._retry_tasks.items())
        for task, _ in pending:
            task.cancel()
        await asyncio.gather(*(task for task, _ in pending), return_exceptions=True)
        for task, job in pending:
            if task.cancelled():
                await self._dead_letter(job, self._specs.get(job.job_type), reason=REASON_SHUTDOWN)
                self._done()
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("job_queue_drain_timeout in_flight=%s", len(self._in_flight))
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks.clear()
        leftovers = list(self._interrupted)
        while not self._queue.empty():
            leftovers.append(self._queue.get_nowait())
            self._queue.task_done()
        self._interrupted.clear()
        for job in leftovers:
            await self._dead_letter(job, self._specs.get(job.job_type), reason=REASON_SHUTDOWN)
            self._done()
        self._started = False
        logger.info("job_queue_stopped dead_lettered_on_shutdown=%s", len(leftovers))

    async def stats(self) -> dict[str, Any]:
        return {
            "mode": self._mode,
            "queued": self._queue.qsize(),
            "in_flight": len(self._in_flight),
            "pending_retries": len(self._retry_tasks),
            "outstanding": self._state.outstanding,
            "breakers": [await breaker.snapshot() for breaker in self._breakers.values()],
        }
