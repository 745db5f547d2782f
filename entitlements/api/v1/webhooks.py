"""支付服务商 webhook。"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from entitlements.core.exceptions import create_error_response
from entitlements.core.metrics import webhook_events
from entitlements.services.polar_webhooks import PolarWebhookHandler, WebhookVerificationError, verify_signature
from entitlements.settings.config import get_settings

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/polar", response_model=None)
async def polar_webhook(request: Request):
    settings = get_settings()
    secret = settings.polar_webhook_secret
    if not secret:
        return create_error_response(
            status_code=500,
            code="webhook_secret_missing",
            message="Webhook secret is not configured",
            hint="Set POLAR_WEBHOOK_SECRET",
        )

    body = await request.body()
    try:
        verify_signature(secret, request.headers, body, tolerance_seconds=settings.webhook_tolerance_seconds)
    except WebhookVerificationError as exc:
        webhook_events.labels(event_type="unknown", outcome="rejected").inc()
        logger.warning("Rejected Polar webhook: %s", exc.code)
        return create_error_response(status_code=401, code=exc.code, message=exc.message)

    try:
        payload: Dict[str, Any] = json.loads(body)
    except ValueError:
        return create_error_response(status_code=400, code="webhook_payload_invalid", message="Body is not JSON")
    if not isinstance(payload, dict):
        return create_error_response(status_code=400, code="webhook_payload_invalid", message="Body is not an object")

    handler: PolarWebhookHandler = request.app.state.webhook_handler
    try:
        outcome = await handler.handle(payload)
    except Exception:
        webhook_events.labels(event_type=str(payload.get("type") or "unknown"), outcome="failed").inc()
        raise
    return {"received": True, "applied": outcome.applied, "type": outcome.event_type}
