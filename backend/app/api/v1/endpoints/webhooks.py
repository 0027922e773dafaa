"""
Payment Gateway Webhook Endpoint.

Always acknowledges with 200 {} unless the body is not JSON (400), so the
provider never retries events we handled or intentionally ignored. Unexpected
failures propagate as 500 and the provider redelivers.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.db.session import get_db
from backend.app.domain.payments.gateway import get_payment_gateway
from backend.app.domain.payments.webhook_payload import is_livemode, verify_webhook_signature
from backend.app.domain.payments.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SIGNATURE_HEADER = "Paymongo-Signature"


@router.post("/payment")
async def receive_payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """Receive a payment gateway event."""
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Malformed webhook body rejected", extra={"body_size": len(raw_body)})
        return JSONResponse(
            status_code=400,
            content={"error_code": "ERR_BAD_REQUEST", "message": "Malformed JSON body", "details": {}}
        )

    if settings.paymongo_webhook_secret:
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_webhook_signature(
            raw_body, signature, settings.paymongo_webhook_secret, livemode=is_livemode(payload)
        ):
            logger.error(
                "Webhook signature verification failed; event not processed",
                extra={"has_signature": signature is not None}
            )
            return {}

    ack = await WebhookReconciler(db, gateway).handle(payload)
    logger.debug(
        "Webhook acknowledged",
        extra={"outcome": ack.outcome.value, "webhook_event_id": ack.webhook_event_id}
    )
    return {}
