from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from tierguard.core.config import get_settings
from tierguard.core.errors import UnknownJobTypeError
from tierguard.core.logging import configure_logging
from tierguard.services.engine import build_engine
from tierguard.services.jobs import ATTEMPT_RETRY, Job
from tierguard.services.reconciliation import run_reconcile_loop


logger = logging.getLogger(__name__)


async def run_job(ctx, job_id: str, job_type: str, payload: dict[str, Any]) -> str:
    # Run one attempt through the shared executor so inline and queued jobs behave the same.
    engine = ctx["engine"]
    if engine.jobs.spec_for(job_type) is None:
        logger.error("job_unknown_type job_id=%s type=%s", job_id, job_type)
        raise UnknownJobTypeError(job_type)
    job = Job(job_id=job_id, job_type=job_type, payload=payload, attempts=ctx.get("job_try", 1) - 1)
    result = await engine.jobs.run_attempt(job)
    if result.status == ATTEMPT_RETRY:
        raise Retry(defer=result.delay_ms / 1000.0)
    return result.status


async def _startup(ctx) -> None:
    # Build the engine once per worker and keep the reconciliation sweep running beside it.
    configure_logging()
    engine = await build_engine()
    ctx["engine"] = engine
    ctx["reconcile_task"] = asyncio.create_task(
        run_reconcile_loop(engine.state_machine, engine.session_factory)
    )


async def _shutdown(ctx) -> None:
    # Cancel the sweep to avoid dangling coroutines on exit.
    task = ctx.get("reconcile_task")
    if task:
        task.cancel()
    engine = ctx.get("engine")
    if engine is not None:
        await engine.shutdown()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    # Dead-lettering happens inside run_attempt; arq just needs room for every attempt.
    max_tries = settings.job_max_attempts + 1
    functions = [run_job]
    on_startup = _startup
    on_shutdown = _shutdown
