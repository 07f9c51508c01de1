"""Inbound CRM webhook receiver.

One route per provider path parameter. Authentication is the provider's
HMAC signature, checked by the InboundWebhookProcessor against the raw
body. The endpoint always acknowledges with 200 so CRMs do not retry a
delivery that was deliberately discarded.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request

from src.app.crm.schemas import CrmProvider

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/crm/{provider}")
async def receive_crm_webhook(provider: CrmProvider, request: Request) -> dict:
    """Receive a CRM webhook delivery. Always returns {"received": true}."""
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        logger.error("webhook.processor_not_initialized", provider=provider.value)
        return {"received": True}

    raw_body = await request.body()
    try:
        outcome = await processor.process(provider, raw_body, dict(request.headers))
    except Exception:
        # process() handles its own failures; this guards the acknowledgement
        logger.exception("webhook.unhandled_error", provider=provider.value)
        return {"received": True}

    if outcome.discarded_reason:
        logger.info(
            "webhook.discarded",
            provider=provider.value,
            reason=outcome.discarded_reason,
        )
    return {"received": True}
