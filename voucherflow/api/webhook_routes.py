"""
Webhook Routes - Processor event delivery.

Unauthenticated; every delivery is signature-verified before anything is read.
"""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.api.dependencies import get_payment_provider
from voucherflow.db.session import get_write_db
from voucherflow.exceptions import WebhookVerificationError
from voucherflow.models.api import WebhookAckResponse
from voucherflow.services.payment_provider import PaymentProvider
from voucherflow.services.webhooks import WebhookReconciliationService

logger = get_logger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Apply a Stripe event.

    400 when the signature is missing or invalid. Any failure while applying
    the event returns 500 so Stripe redelivers it.
    """
    if not stripe_signature:
        logger.warning("webhook_signature_missing")
        raise WebhookVerificationError("Missing stripe-signature header")

    payload = await request.body()

    service = WebhookReconciliationService(db, provider)
    outcome = await service.handle(payload, stripe_signature)

    logger.info("webhook_received", outcome=outcome.value)
    return WebhookAckResponse(received=True)
