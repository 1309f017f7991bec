"""
Payment Authorization Orchestrator - Ties a processor authorization to a purchase.

Order of work for one authorization:
    1. purchase ownership and deal reference
    2. amount and currency against the authoritative deal price
    3. merchant split (platform fee + destination account)
    4. buyer's processor customer, created lazily
    5. one inventory unit reserved under the purchase row lock
    6. processor authorization
    7. purchase stamped with the authorization reference (authorized)

The unit is held before the processor is called. If the processor call fails,
the unit is released under the same guard and the purchase stays pending so
the buyer can retry.
"""

import time
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.db.models import Buyer, Deal, Merchant, Purchase, SavedPaymentMethod
from voucherflow.exceptions import (
    DataIntegrityError,
    MerchantNotOnboardedError,
    PermissionDeniedError,
    SettlementError,
    StateError,
    ValidationError,
)
from voucherflow.models.api import PurchaseStatus
from voucherflow.models.domain import AuthorizationOptions, AuthorizationResult, CallerIdentity
from voucherflow.observability.metrics import metrics
from voucherflow.observability.tracing import trace_operation
from voucherflow.services.amount_verifier import AmountVerifier
from voucherflow.services.lifecycle import PROCESSOR_SUCCEEDED, PurchaseLifecycle
from voucherflow.services.payment_provider import PaymentIntent, PaymentMetadata, PaymentProvider
from voucherflow.services.rate_limit import PAYMENT_CREATE, RateLimiter

logger = get_logger(__name__)


class PaymentAuthorizationService:
    """Builds processor authorizations for purchases."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        verifier: AmountVerifier | None = None,
        lifecycle: PurchaseLifecycle | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.verifier = verifier or AmountVerifier()
        self.lifecycle = lifecycle or PurchaseLifecycle(session, provider)
        self.rate_limiter = rate_limiter or RateLimiter(session)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _find_merchant(self, merchant_id: UUID) -> Merchant | None:
        stmt = select(Merchant).where(Merchant.id == merchant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_buyer(self, buyer_id: str) -> Buyer | None:
        stmt = select(Buyer).where(Buyer.id == buyer_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_saved_method(self, buyer_id: str, method_ref: str) -> SavedPaymentMethod | None:
        stmt = select(SavedPaymentMethod).where(
            SavedPaymentMethod.buyer_id == buyer_id,
            SavedPaymentMethod.external_method_ref == method_ref,
            SavedPaymentMethod.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ========================================================================
    # Steps
    # ========================================================================

    async def _split_for(self, deal: Deal, expected_minor: int) -> tuple[str | None, int]:
        """
        Destination account and platform fee for a deal's merchant.

        Raises:
            MerchantNotOnboardedError: Merchant cannot receive split payments
        """
        if not settings.merchant_split_enabled:
            return None, 0

        merchant = await self._find_merchant(deal.merchant_id)
        if merchant is None or not merchant.account_onboarded or not merchant.external_account_ref:
            logger.warning(
                "merchant_not_onboarded",
                deal_id=str(deal.id),
                merchant_id=str(deal.merchant_id),
            )
            raise MerchantNotOnboardedError(deal.merchant_id)

        return merchant.external_account_ref, self.verifier.platform_fee(expected_minor)

    async def ensure_customer(self, caller: CallerIdentity) -> str:
        """
        Return the caller's processor customer, creating buyer and customer lazily.

        Raises:
            PaymentProviderError: Customer creation failed
        """
        buyer = await self._find_buyer(caller.user_id)

        if buyer is None:
            buyer = Buyer(id=caller.user_id, email=caller.email)
            self.session.add(buyer)
            try:
                await self.session.flush()
                await self.session.commit()
            except IntegrityError as e:
                # Race condition - buyer created by a concurrent request
                logger.warning("buyer_creation_integrity_error", error=str(e))
                await self.session.rollback()
                buyer = await self._find_buyer(caller.user_id)
                if buyer is None:
                    raise DataIntegrityError(f"Buyer creation failed: {e}") from e

        if buyer.external_customer_ref:
            return buyer.external_customer_ref

        customer_ref = await self.provider.create_customer(caller.email, caller.user_id)
        buyer.external_customer_ref = customer_ref
        await self.session.commit()

        logger.info("buyer_customer_created", buyer_id=caller.user_id, customer_ref=customer_ref)
        return customer_ref

    async def _require_saved_method(self, caller: CallerIdentity, method_ref: str) -> str:
        """
        Check a saved method belongs to the caller's processor customer.

        Returns the caller's customer reference.

        Raises:
            StateError: Caller has no processor customer yet
            PermissionDeniedError: Method is not an active method of the caller
        """
        buyer = await self._find_buyer(caller.user_id)
        if buyer is None or not buyer.external_customer_ref:
            raise StateError("No saved payment methods on file")

        method = await self._find_saved_method(caller.user_id, method_ref)
        if method is None or method.external_customer_ref != buyer.external_customer_ref:
            logger.warning(
                "saved_method_not_owned",
                buyer_id=caller.user_id,
                method_ref=method_ref,
            )
            raise PermissionDeniedError("Payment method does not belong to caller")

        return buyer.external_customer_ref

    async def _hold_unit(self, purchase_id: UUID) -> None:
        """Reserve one unit for the purchase under its row lock and commit."""
        purchase = await self.lifecycle.lock_purchase(purchase_id)
        try:
            self._require_pending(purchase)
            await self.lifecycle.reserve_inventory(purchase)
        except SettlementError:
            await self.session.rollback()
            raise
        await self.session.commit()

    async def _compensate(self, purchase_id: UUID) -> None:
        """Give back the held unit after a failed processor call."""
        await self.session.rollback()
        purchase = await self.lifecycle.lock_purchase(purchase_id)
        # A concurrent attempt may have authorized with this unit meanwhile
        if purchase.status == PurchaseStatus.PENDING:
            await self.lifecycle.release_reservation(purchase, reason="authorization_failed")
        await self.session.commit()

    @staticmethod
    def _require_pending(purchase: Purchase) -> None:
        if purchase.status != PurchaseStatus.PENDING:
            raise StateError(f"Purchase is {purchase.status}, cannot be authorized")

    # ========================================================================
    # Operations
    # ========================================================================

    async def authorize(
        self,
        caller: CallerIdentity,
        deal_id: UUID,
        purchase_id: UUID,
        amount: Decimal,
        currency: str,
        options: AuthorizationOptions | None = None,
    ) -> AuthorizationResult:
        """
        Authorize payment for a pending purchase.

        Raises:
            RateLimitExceededError: Too many authorization attempts
            PurchaseNotFoundError: Purchase does not exist
            PermissionDeniedError: Purchase or saved method belongs to someone else
            ValidationError: Purchase is for a different deal, or the amount/currency is wrong
            DealNotFoundError / DealInactiveError / DealExpiredError: Deal cannot be sold
            MerchantNotOnboardedError: Merchant cannot receive split payments
            OutOfStockError: No units left
            CardDeclinedError: Saved card was declined
            PaymentProviderError: Processor call failed
        """
        options = options or AuthorizationOptions()
        saved_method = options.saved_method_ref is not None
        start = time.perf_counter()

        with trace_operation(
            "payment_authorize",
            purchase_id=purchase_id,
            deal_id=deal_id,
            saved_method=saved_method,
        ):
            try:
                result, amount_minor = await self._authorize(
                    caller, deal_id, purchase_id, amount, currency, options
                )
            except SettlementError as exc:
                metrics.record_authorization(
                    type(exc).__name__, saved_method, 0, time.perf_counter() - start
                )
                raise

        metrics.record_authorization(
            "success", saved_method, amount_minor, time.perf_counter() - start
        )
        return result

    async def authorize_with_saved_method(
        self,
        caller: CallerIdentity,
        deal_id: UUID,
        purchase_id: UUID,
        amount: Decimal,
        currency: str,
        saved_method_ref: str,
    ) -> AuthorizationResult:
        """
        Charge a saved card off-session, confirming the purchase on immediate success.

        Raises the same errors as authorize().
        """
        return await self.authorize(
            caller,
            deal_id,
            purchase_id,
            amount,
            currency,
            AuthorizationOptions(saved_method_ref=saved_method_ref),
        )

    async def _authorize(
        self,
        caller: CallerIdentity,
        deal_id: UUID,
        purchase_id: UUID,
        amount: Decimal,
        currency: str,
        options: AuthorizationOptions,
    ) -> tuple[AuthorizationResult, int]:
        await self.rate_limiter.hit(caller.user_id, PAYMENT_CREATE)

        purchase = await self.lifecycle.get_purchase(purchase_id)
        if purchase.buyer_id != caller.user_id:
            raise PermissionDeniedError("Purchase does not belong to caller")
        if purchase.deal_id != deal_id:
            raise ValidationError("Purchase does not reference this deal")

        if purchase.status == PurchaseStatus.AUTHORIZED and purchase.external_authorization_ref:
            # Repeated call: hand back the existing authorization
            existing = await self.provider.get_payment_status(purchase.external_authorization_ref)
            return (
                AuthorizationResult(
                    client_handle=existing.client_secret,
                    authorization_ref=existing.payment_id,
                    status=existing.status,
                ),
                purchase.amount_minor,
            )
        self._require_pending(purchase)

        deal = await self.lifecycle.ledger.get_purchasable_deal(deal_id)
        expected_minor = self.verifier.verify(amount, deal.price, currency, deal.currency)
        currency = deal.currency
        destination, fee_minor = await self._split_for(deal, expected_minor)

        if options.saved_method_ref:
            customer_ref = await self._require_saved_method(caller, options.saved_method_ref)
        else:
            customer_ref = await self.ensure_customer(caller)

        await self._hold_unit(purchase_id)

        intent = PaymentIntent(
            amount_minor=expected_minor,
            currency=currency.lower(),
            description=f"{deal.title} - {deal.merchant_name}",
            customer_ref=customer_ref,
            metadata=PaymentMetadata(
                buyer_id=caller.user_id,
                deal_id=str(deal_id),
                purchase_id=str(purchase_id),
                merchant_id=str(deal.merchant_id),
                platform_fee_minor=fee_minor,
            ),
            idempotency_key=f"authorize-{purchase_id}-{options.saved_method_ref or 'client'}",
            destination_account_ref=destination,
            application_fee_minor=fee_minor if destination else None,
            setup_future_usage=options.setup_future_usage,
            payment_method_ref=options.saved_method_ref,
        )

        try:
            payment = await self.provider.create_payment_intent(intent)
        except SettlementError:
            await self._compensate(purchase_id)
            raise

        purchase = await self.lifecycle.lock_purchase(purchase_id)
        try:
            await self.lifecycle.mark_authorized(
                purchase, payment.payment_id, expected_minor, currency, fee_minor
            )
        except SettlementError:
            await self.session.rollback()
            raise
        await self.session.commit()

        logger.info(
            "payment_authorized",
            purchase_id=str(purchase_id),
            authorization_ref=payment.payment_id,
            status=payment.status,
            amount_minor=expected_minor,
            platform_fee_minor=fee_minor,
        )

        voucher_code: str | None = None
        if options.saved_method_ref and payment.status == PROCESSOR_SUCCEEDED:
            confirmation = await self.lifecycle.confirm(purchase_id, caller.user_id)
            voucher_code = confirmation.voucher_code

        return (
            AuthorizationResult(
                client_handle=payment.client_secret,
                authorization_ref=payment.payment_id,
                status=payment.status,
                voucher_code=voucher_code,
            ),
            expected_minor,
        )

