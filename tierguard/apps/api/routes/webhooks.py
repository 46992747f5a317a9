from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tierguard.apps.api.deps import get_engine
from tierguard.services.engine import BillingEngine
from tierguard.services.ingestor import INGEST_REJECTED


logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/payments")
async def payment_webhook(request: Request, engine: BillingEngine = Depends(get_engine)) -> JSONResponse:
    # Signatures cover the exact bytes, so read the raw body before any parsing.
    raw_body = await request.body()
    signature = request.headers.get(engine.settings.webhook_signature_header)
    # StorageFailureError propagates to the 503 handler so the provider redelivers.
    result = await engine.ingestor.ingest(raw_body, signature)
    if result.status == INGEST_REJECTED:
        return JSONResponse(status_code=400, content={"status": result.status, "reason": result.reason})
    return JSONResponse(status_code=200, content={"status": result.status, "event_id": result.event_id})
