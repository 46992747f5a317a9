from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, Field

from tierguard.core.config import Settings, get_settings
from tierguard.services.catalog import QUOTA_AI_GENERATIONS
from tierguard.services.jobs import Job, JobHandler, JobQueue
from tierguard.services.signatures import build_signature
from tierguard.services.telemetry import record_external_call
from tierguard.services.usage_ledger import UsageLedger


logger = logging.getLogger(__name__)

NOTIFICATION_JOB = "notification.send"
AI_GENERATION_JOB = "ai.generate"
NOTIFICATION_DEPENDENCY = "notifications"
AI_DEPENDENCY = "ai_provider"


class NotificationJobPayload(BaseModel):
    # Match the payload the state machine submits for lifecycle notifications.
    template: str
    account_id: str
    event_id: str | None = None
    occurred_at: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class AIGenerationJobPayload(BaseModel):
    account_id: str
    prompt: str
    kind: str = "meal_plan"
    # Units consumed at authorization time and refunded if the job dead-letters.
    quota_units: int = 1
    request_id: str | None = None


def _timeout_s(settings: Settings) -> float:
    return max(0.2, settings.ext_call_timeout_ms / 1000.0)


async def _post(
    url: str,
    *,
    integration: str,
    body: bytes,
    headers: dict[str, str],
    timeout_s: float,
    transport: httpx.AsyncBaseTransport | None,
) -> httpx.Response:
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.post(url, content=body, headers=headers)
            # 4xx and 5xx both count as failed attempts for the breaker and retries.
            response.raise_for_status()
    except httpx.HTTPError:
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
        raise
    record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
    return response


def build_notification_handler(
    settings: Settings | None = None, *, transport: httpx.AsyncBaseTransport | None = None
) -> JobHandler:
    settings = settings or get_settings()

    async def send_notification(payload: dict[str, Any]) -> None:
        notification = NotificationJobPayload.model_validate(payload)
        if not settings.notify_webhook_url:
            # Local and test setups run without a notification collaborator.
            logger.info(
                "notification_skipped template=%s account_id=%s", notification.template, notification.account_id
            )
            return
        body = json.dumps(notification.model_dump(), separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Notification-Template": notification.template}
        if settings.notify_webhook_secret:
            headers["X-Signature"] = build_signature(settings.notify_webhook_secret, body)
        await _post(
            settings.notify_webhook_url,
            integration=NOTIFICATION_DEPENDENCY,
            body=body,
            headers=headers,
            timeout_s=_timeout_s(settings),
            transport=transport,
        )
        logger.info("notification_sent template=%s account_id=%s", notification.template, notification.account_id)

    return send_notification


def build_ai_generation_handler(
    settings: Settings | None = None, *, transport: httpx.AsyncBaseTransport | None = None
) -> JobHandler:
    settings = settings or get_settings()

    async def generate(payload: dict[str, Any]) -> dict[str, Any]:
        request = AIGenerationJobPayload.model_validate(payload)
        if not settings.ai_provider_url:
            raise RuntimeError("ai_provider_url is not configured")
        headers = {"Content-Type": "application/json"}
        if settings.ai_provider_api_key:
            headers["Authorization"] = f"Bearer {settings.ai_provider_api_key}"
        body = json.dumps(
            {"prompt": request.prompt, "kind": request.kind, "request_id": request.request_id},
            separators=(",", ":"),
        ).encode("utf-8")
        response = await _post(
            settings.ai_provider_url,
            integration=AI_DEPENDENCY,
            body=body,
            headers=headers,
            timeout_s=_timeout_s(settings),
            transport=transport,
        )
        logger.info("ai_generation_completed account_id=%s kind=%s", request.account_id, request.kind)
        return response.json()

    return generate


def build_ai_refund_callback(ledger: UsageLedger):
    async def refund_generation(job: Job, reason: str) -> None:
        # The unit was consumed when the request was authorized; give it back.
        account_id = job.payload.get("account_id")
        if not account_id:
            return
        units = int(job.payload.get("quota_units") or 1)
        await ledger.release(account_id, QUOTA_AI_GENERATIONS, by=units)
        logger.info(
            "ai_generation_refunded account_id=%s units=%s job_id=%s reason=%s",
            account_id,
            units,
            job.job_id,
            reason,
        )

    return refund_generation


def register_builtin_jobs(
    queue: JobQueue,
    ledger: UsageLedger,
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    settings = settings or get_settings()
    queue.register(
        NOTIFICATION_JOB,
        build_notification_handler(settings, transport=transport),
        dependency=NOTIFICATION_DEPENDENCY,
    )
    queue.register(
        AI_GENERATION_JOB,
        build_ai_generation_handler(settings, transport=transport),
        dependency=AI_DEPENDENCY,
        on_dead_letter=build_ai_refund_callback(ledger),
    )
