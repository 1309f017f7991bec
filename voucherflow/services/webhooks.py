"""
Webhook Reconciliation - Applies processor-reported outcomes to purchases.

Each event is recorded in processed_webhook_events inside the same
transaction as its effects. A redelivered event finds its id already recorded
and is acknowledged without touching anything; an event whose handling fails
rolls back together with its dedupe row, so the redelivery is processed.
"""

import time
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import ClassVar
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.db.models import ProcessedWebhookEvent, Purchase
from voucherflow.exceptions import PurchaseNotFoundError
from voucherflow.observability.metrics import metrics
from voucherflow.observability.tracing import trace_operation
from voucherflow.services.lifecycle import PurchaseLifecycle
from voucherflow.services.onboarding import MerchantOnboardingService
from voucherflow.services.payment_provider import PaymentProvider, WebhookEvent

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
ACCOUNT_UPDATED = "account.updated"

HANDLED_EVENT_TYPES = frozenset({PAYMENT_SUCCEEDED, PAYMENT_FAILED, ACCOUNT_UPDATED})


class WebhookOutcome(str, Enum):
    """What happened to a delivered event."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class WebhookReconciliationService:
    """Verifies, deduplicates and dispatches processor events."""

    # Expired dedupe rows are pruned at most this often per process
    _last_cleanup: ClassVar[float] = 0
    _CLEANUP_INTERVAL: ClassVar[int] = 300  # 5 minutes

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        lifecycle: PurchaseLifecycle | None = None,
        onboarding: MerchantOnboardingService | None = None,
    ) -> None:
        """Initialize with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.lifecycle = lifecycle or PurchaseLifecycle(session, provider)
        self.onboarding = onboarding or MerchantOnboardingService(session, provider)

    async def handle(self, payload: bytes, signature: str) -> WebhookOutcome:
        """
        Verify and apply one webhook delivery.

        Raises:
            WebhookVerificationError: Signature or payload invalid; nothing was applied
        """
        event = await self.provider.verify_webhook(payload, signature)

        if event.event_type not in HANDLED_EVENT_TYPES:
            logger.info("webhook_ignored", event_id=event.event_id, event_type=event.event_type)
            metrics.record_webhook_event(event.event_type, WebhookOutcome.IGNORED.value)
            return WebhookOutcome.IGNORED

        with trace_operation("webhook_apply", event_id=event.event_id, event_type=event.event_type):
            try:
                if not await self._mark_processed(event):
                    await self.session.rollback()
                    logger.info(
                        "webhook_duplicate",
                        event_id=event.event_id,
                        event_type=event.event_type,
                    )
                    metrics.record_webhook_event(event.event_type, WebhookOutcome.DUPLICATE.value)
                    return WebhookOutcome.DUPLICATE

                await self._dispatch(event)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                metrics.record_webhook_event(event.event_type, "error")
                raise

        metrics.record_webhook_event(event.event_type, WebhookOutcome.PROCESSED.value)
        await self._prune_if_needed()
        return WebhookOutcome.PROCESSED

    async def _mark_processed(self, event: WebhookEvent) -> bool:
        """Record the event id. Returns False if it was already recorded."""
        now = _utc_now()
        stmt = (
            insert(ProcessedWebhookEvent)
            .values(
                event_id=event.event_id,
                event_type=event.event_type,
                processed_at=now,
                expires_at=now + timedelta(hours=settings.webhook_event_retention_hours),
            )
            .on_conflict_do_nothing(index_elements=[ProcessedWebhookEvent.event_id])
            .returning(ProcessedWebhookEvent.event_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _prune_if_needed(self) -> None:
        now = time.time()
        if now - WebhookReconciliationService._last_cleanup < self._CLEANUP_INTERVAL:
            return
        WebhookReconciliationService._last_cleanup = now

        stmt = delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.expires_at < _utc_now())
        result = await self.session.execute(stmt)
        await self.session.commit()

        if result.rowcount:
            logger.info("webhook_events_pruned", count=result.rowcount)

    async def _dispatch(self, event: WebhookEvent) -> None:
        if event.event_type == ACCOUNT_UPDATED:
            if event.account is not None:
                await self.onboarding.sync_account(event.account)
            return

        purchase = await self._lock_target(event)
        if purchase is None:
            logger.warning(
                "webhook_purchase_not_found",
                event_id=event.event_id,
                payment_id=event.payment_id,
                purchase_id=event.metadata_purchase_id,
            )
            return

        if (
            purchase.external_authorization_ref is not None
            and purchase.external_authorization_ref != event.payment_id
        ):
            # Outcome of an abandoned earlier attempt; the current one decides
            logger.warning(
                "webhook_authorization_mismatch",
                event_id=event.event_id,
                purchase_id=str(purchase.id),
                payment_id=event.payment_id,
            )
            return

        if event.event_type == PAYMENT_SUCCEEDED:
            self.lifecycle.record_payment_succeeded(purchase)
        elif event.event_type == PAYMENT_FAILED:
            await self.lifecycle.fail(purchase, reason=event.failure_message or "payment_failed")

        logger.info(
            "webhook_applied",
            event_id=event.event_id,
            event_type=event.event_type,
            purchase_id=str(purchase.id),
            status=purchase.status,
            payment_status=purchase.payment_status,
        )

    async def _lock_target(self, event: WebhookEvent) -> Purchase | None:
        """Find the purchase an event is about, by metadata first, then by reference."""
        if event.metadata_purchase_id:
            try:
                return await self.lifecycle.lock_purchase(UUID(event.metadata_purchase_id))
            except (ValueError, PurchaseNotFoundError):
                pass
        if event.payment_id:
            return await self.lifecycle.lock_purchase_by_authorization(event.payment_id)
        return None
