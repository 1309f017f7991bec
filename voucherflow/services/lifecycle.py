"""
Purchase Lifecycle - Owns Purchase.status and its legal transitions.

    pending -> authorized -> confirmed -> redeemed
    pending | authorized | confirmed -> failed   (releases the held unit, at most once)

Every transition re-reads the purchase row with SELECT ... FOR UPDATE, so
concurrent writers (client calls, webhooks) apply one after another against
fresh state. Purchase.inventory_reserved is the reservation guard and only
changes under that lock.

Transition primitives do not commit; the top-level operations (create_purchase,
confirm) do.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.db.models import Purchase
from voucherflow.exceptions import (
    InvalidPurchaseStateError,
    PaymentNotCompletedError,
    PaymentProviderError,
    PermissionDeniedError,
    PurchaseNotFoundError,
)
from voucherflow.models.api import PaymentStatus, PurchaseStatus
from voucherflow.models.domain import CallerIdentity, ConfirmationResult
from voucherflow.observability.metrics import metrics
from voucherflow.services.amount_verifier import to_minor_units
from voucherflow.services.inventory import InventoryLedger
from voucherflow.services.payment_provider import PaymentProvider

logger = get_logger(__name__)

# Processor statuses that end an authorization without payment
TERMINAL_FAILURE_STATUSES = frozenset({"requires_payment_method", "canceled"})
PROCESSOR_SUCCEEDED = "succeeded"

# Statuses that already carry a voucher
VOUCHER_STATUSES = frozenset({PurchaseStatus.CONFIRMED.value, PurchaseStatus.REDEEMED.value})


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PurchaseLifecycle:
    """State machine over the purchases table."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        ledger: InventoryLedger | None = None,
    ) -> None:
        """Initialize with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.ledger = ledger or InventoryLedger(session)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_purchase(self, purchase_id: UUID) -> Purchase:
        """
        Read a purchase without locking.

        Raises:
            PurchaseNotFoundError: Purchase does not exist
        """
        stmt = select(Purchase).where(Purchase.id == purchase_id)
        result = await self.session.execute(stmt)
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def lock_purchase(self, purchase_id: UUID) -> Purchase:
        """
        Lock a purchase row and refresh it from the database.

        Raises:
            PurchaseNotFoundError: Purchase does not exist
        """
        stmt = (
            select(Purchase)
            .where(Purchase.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def lock_purchase_by_authorization(self, authorization_ref: str) -> Purchase | None:
        """Lock the purchase stamped with a processor authorization reference."""
        stmt = (
            select(Purchase)
            .where(Purchase.external_authorization_ref == authorization_ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ========================================================================
    # Transition primitives (caller commits)
    # ========================================================================

    async def reserve_inventory(self, purchase: Purchase) -> bool:
        """
        Hold one unit of the purchase's deal, unless it already holds one.

        The purchase must be locked. Returns True if a unit was taken now.
        """
        if purchase.inventory_reserved:
            return False
        await self.ledger.reserve_unit(purchase.deal_id)
        purchase.inventory_reserved = True
        return True

    async def release_reservation(self, purchase: Purchase, reason: str) -> bool:
        """
        Give back the purchase's unit, if it holds one.

        The purchase must be locked. Returns True if a unit was released now.
        """
        if not purchase.inventory_reserved:
            return False
        await self.ledger.release_unit(purchase.deal_id, reason=reason)
        purchase.inventory_reserved = False
        return True

    async def mark_authorized(
        self,
        purchase: Purchase,
        authorization_ref: str,
        amount_minor: int,
        currency: str,
        platform_fee_minor: int,
    ) -> None:
        """
        Stamp the processor authorization on a locked purchase.

        Idempotent for the same reference. Re-takes a unit if a concurrent
        failed attempt released the one this authorization relied on.

        Raises:
            InvalidPurchaseStateError: Purchase moved past pending under a different authorization
        """
        if purchase.external_authorization_ref == authorization_ref and (
            purchase.status != PurchaseStatus.PENDING
        ):
            return

        if purchase.status != PurchaseStatus.PENDING:
            raise InvalidPurchaseStateError(
                purchase.id,
                PurchaseStatus(purchase.status),
                f"Purchase is {purchase.status}, cannot be authorized",
            )

        await self.reserve_inventory(purchase)

        purchase.external_authorization_ref = authorization_ref
        purchase.amount_minor = amount_minor
        purchase.currency = currency.lower()
        purchase.platform_fee_minor = platform_fee_minor
        purchase.status = PurchaseStatus.AUTHORIZED.value

        logger.info(
            "purchase_authorized",
            purchase_id=str(purchase.id),
            authorization_ref=authorization_ref,
            amount_minor=amount_minor,
        )

    def record_payment_succeeded(self, purchase: Purchase) -> bool:
        """
        Record the processor's success report on a locked purchase.

        Does not confirm; confirmation stays an explicit buyer step. Returns
        True if the payment status changed.
        """
        if purchase.payment_status == PaymentStatus.SUCCEEDED:
            return False

        if purchase.status == PurchaseStatus.FAILED:
            logger.warning(
                "payment_succeeded_on_failed_purchase",
                purchase_id=str(purchase.id),
                authorization_ref=purchase.external_authorization_ref,
            )

        purchase.payment_status = PaymentStatus.SUCCEEDED.value
        purchase.payment_succeeded_at = _utc_now()
        logger.info("payment_succeeded_recorded", purchase_id=str(purchase.id))
        return True

    async def fail(self, purchase: Purchase, reason: str) -> bool:
        """
        Move a locked purchase to failed and release its unit.

        Failed and redeemed purchases are left alone. Failing a confirmed
        purchase invalidates its voucher. Returns True if the purchase
        transitioned to failed.
        """
        status = PurchaseStatus(purchase.status)

        if status in (PurchaseStatus.FAILED, PurchaseStatus.REDEEMED):
            return False

        if status == PurchaseStatus.CONFIRMED:
            logger.warning(
                "payment_failed_after_confirmation",
                purchase_id=str(purchase.id),
                voucher_code=purchase.voucher_code,
                reason=reason,
            )

        purchase.status = PurchaseStatus.FAILED.value
        purchase.payment_status = PaymentStatus.FAILED.value
        purchase.failed_at = _utc_now()
        purchase.failure_reason = reason
        await self.release_reservation(purchase, reason="failed")

        logger.info(
            "purchase_failed",
            purchase_id=str(purchase.id),
            previous_status=status.value,
            reason=reason,
        )
        return True

    # ========================================================================
    # Operations
    # ========================================================================

    async def create_purchase(self, caller: CallerIdentity, deal_id: UUID) -> Purchase:
        """
        Create a pending purchase priced from the deal.

        Raises:
            DealNotFoundError: Deal does not exist
            DealInactiveError: Deal was deactivated
            DealExpiredError: Deal's expiration time has passed
        """
        deal = await self.ledger.get_purchasable_deal(deal_id)

        purchase = Purchase(
            id=uuid4(),
            buyer_id=caller.user_id,
            deal_id=deal.id,
            amount=deal.price,
            amount_minor=to_minor_units(deal.price),
            currency=deal.currency,
            platform_fee_minor=0,
            status=PurchaseStatus.PENDING.value,
            payment_status=PaymentStatus.NONE.value,
            inventory_reserved=False,
            expiration_time=deal.expiration_time,
        )
        self.session.add(purchase)
        await self.session.commit()

        logger.info(
            "purchase_created",
            purchase_id=str(purchase.id),
            deal_id=str(deal_id),
            buyer_id=caller.user_id,
        )
        return purchase

    async def confirm(self, purchase_id: UUID, caller_id: str) -> ConfirmationResult:
        """
        Confirm an authorized purchase and issue its voucher.

        Idempotent: a purchase that already has a voucher returns it unchanged.
        The processor is polled without holding the row lock; the transition is
        then applied against the freshly locked row.

        Raises:
            PurchaseNotFoundError: Purchase does not exist
            PermissionDeniedError: Caller is not the buyer
            InvalidPurchaseStateError: Purchase is pending or failed
            PaymentNotCompletedError: Processor still reports the payment in flight
        """
        purchase = await self.get_purchase(purchase_id)
        if purchase.buyer_id != caller_id:
            raise PermissionDeniedError("Purchase does not belong to caller")

        if purchase.status in VOUCHER_STATUSES and purchase.voucher_code:
            metrics.record_confirmation("already_confirmed")
            return ConfirmationResult(purchase_id=purchase.id, voucher_code=purchase.voucher_code)

        self._require_authorized(purchase)

        processor_status: str | None = None
        authorization_ref = purchase.external_authorization_ref
        if authorization_ref and purchase.payment_status != PaymentStatus.SUCCEEDED:
            try:
                result = await self.provider.get_payment_status(authorization_ref)
                processor_status = result.status
            except PaymentProviderError as exc:
                # Verification is best effort; the webhook remains the backstop
                logger.warning(
                    "payment_verification_skipped",
                    purchase_id=str(purchase_id),
                    error=str(exc),
                )

        purchase = await self.lock_purchase(purchase_id)

        if purchase.status in VOUCHER_STATUSES and purchase.voucher_code:
            await self.session.commit()
            metrics.record_confirmation("already_confirmed")
            return ConfirmationResult(purchase_id=purchase.id, voucher_code=purchase.voucher_code)

        try:
            self._require_authorized(purchase)
        except InvalidPurchaseStateError:
            await self.session.rollback()
            raise

        if processor_status in TERMINAL_FAILURE_STATUSES:
            await self.fail(purchase, reason=f"processor status {processor_status}")
            await self.session.commit()
            metrics.record_confirmation("payment_failed")
            raise InvalidPurchaseStateError(
                purchase.id,
                PurchaseStatus.FAILED,
                f"Payment failed (status: {processor_status})",
            )

        if (
            processor_status is not None
            and processor_status != PROCESSOR_SUCCEEDED
            and purchase.payment_status != PaymentStatus.SUCCEEDED
        ):
            await self.session.rollback()
            metrics.record_confirmation("payment_incomplete")
            raise PaymentNotCompletedError(authorization_ref or "", processor_status)

        if processor_status == PROCESSOR_SUCCEEDED:
            self.record_payment_succeeded(purchase)

        now = _utc_now()
        purchase.status = PurchaseStatus.CONFIRMED.value
        purchase.voucher_code = str(purchase.id)
        purchase.confirmed_at = now
        await self.session.commit()

        metrics.record_confirmation("confirmed")
        logger.info(
            "purchase_confirmed",
            purchase_id=str(purchase.id),
            voucher_code=purchase.voucher_code,
        )
        return ConfirmationResult(purchase_id=purchase.id, voucher_code=purchase.voucher_code)

    @staticmethod
    def _require_authorized(purchase: Purchase) -> None:
        if purchase.status == PurchaseStatus.FAILED:
            raise InvalidPurchaseStateError(
                purchase.id, PurchaseStatus.FAILED, "Purchase has failed"
            )
        if purchase.status != PurchaseStatus.AUTHORIZED:
            raise InvalidPurchaseStateError(
                purchase.id,
                PurchaseStatus(purchase.status),
                "Purchase has not been authorized",
            )
