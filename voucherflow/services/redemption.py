"""
Redemption Guard - Exactly-once voucher consumption at the point of sale.

redeem() re-reads the purchase under SELECT ... FOR UPDATE and re-applies
every check to the fresh row before flipping it to redeemed. Two scanners
racing on one voucher serialize on the row lock; the second sees it redeemed.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.db.models import Deal, Merchant, Purchase
from voucherflow.db.transactions import run_transaction
from voucherflow.exceptions import (
    AlreadyRedeemedError,
    DataIntegrityError,
    InvalidPurchaseStateError,
    PermissionDeniedError,
    PurchaseNotFoundError,
    SettlementError,
    VoucherExpiredError,
)
from voucherflow.models.api import PurchaseStatus
from voucherflow.models.domain import CallerIdentity, RedemptionResult, VoucherSnapshot
from voucherflow.observability.metrics import metrics
from voucherflow.observability.tracing import trace_operation

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def check_redeemable(purchase: Purchase, now: datetime) -> None:
    """
    Apply the redemption checks, in order.

    Raises:
        AlreadyRedeemedError: Voucher was already used
        InvalidPurchaseStateError: Purchase is not confirmed
        VoucherExpiredError: Voucher is past its expiration time
    """
    if purchase.status == PurchaseStatus.REDEEMED:
        raise AlreadyRedeemedError(purchase.id, purchase.redeemed_at)
    if purchase.status != PurchaseStatus.CONFIRMED:
        raise InvalidPurchaseStateError(
            purchase.id,
            PurchaseStatus(purchase.status),
            "Voucher is not valid for redemption",
        )
    if now > purchase.expiration_time:
        raise VoucherExpiredError(purchase.id, purchase.expiration_time)


class RedemptionService:
    """Point-of-sale voucher verification and redemption."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def _find_purchase(self, purchase_id: UUID, for_update: bool = False) -> Purchase:
        stmt = select(Purchase).where(Purchase.id == purchase_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def _find_deal_and_merchant(self, deal_id: UUID) -> tuple[Deal, Merchant]:
        stmt = select(Deal, Merchant).join(Merchant, Merchant.id == Deal.merchant_id).where(
            Deal.id == deal_id
        )
        result = await self.session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            raise DataIntegrityError(f"Purchase references missing deal {deal_id}")
        return row[0], row[1]

    async def verify(self, purchase_id: UUID, caller: CallerIdentity) -> VoucherSnapshot:
        """
        Check a voucher without consuming it.

        The caller must be the buyer or the deal's merchant owner. The buyer id
        is only revealed to the buyer.

        Raises:
            PurchaseNotFoundError: Purchase does not exist
            PermissionDeniedError: Caller is neither buyer nor merchant owner
            AlreadyRedeemedError: Voucher was already used
            InvalidPurchaseStateError: Purchase is not confirmed
            VoucherExpiredError: Voucher is past its expiration time
        """
        purchase = await self._find_purchase(purchase_id)
        deal, merchant = await self._find_deal_and_merchant(purchase.deal_id)

        is_buyer = purchase.buyer_id == caller.user_id
        if not is_buyer and merchant.owner_id != caller.user_id:
            raise PermissionDeniedError("You don't have permission to view this voucher")

        check_redeemable(purchase, _utc_now())

        return VoucherSnapshot(
            purchase_id=purchase.id,
            deal_id=purchase.deal_id,
            deal_title=deal.title,
            merchant_name=deal.merchant_name,
            amount=purchase.amount,
            currency=purchase.currency,
            status=PurchaseStatus(purchase.status),
            voucher_code=purchase.voucher_code,
            expiration_time=purchase.expiration_time,
            confirmed_at=purchase.confirmed_at,
            buyer_id=purchase.buyer_id if is_buyer else None,
        )

    async def redeem(self, purchase_id: UUID, redeemer: CallerIdentity) -> RedemptionResult:
        """
        Consume a voucher. Only the deal's merchant owner may redeem.

        Raises:
            PurchaseNotFoundError: Purchase does not exist
            PermissionDeniedError: Caller does not own the deal's merchant
            AlreadyRedeemedError: Voucher was already used
            InvalidPurchaseStateError: Purchase is not confirmed
            VoucherExpiredError: Voucher is past its expiration time
            ConcurrencyError: Conflicts persisted through every retry
        """

        async def work() -> RedemptionResult:
            purchase = await self._find_purchase(purchase_id, for_update=True)
            _, merchant = await self._find_deal_and_merchant(purchase.deal_id)
            if merchant.owner_id != redeemer.user_id:
                raise PermissionDeniedError("Only the merchant can redeem this voucher")

            now = _utc_now()
            check_redeemable(purchase, now)

            purchase.status = PurchaseStatus.REDEEMED.value
            purchase.redeemed_at = now
            purchase.redeemer_id = redeemer.user_id

            return RedemptionResult(
                purchase_id=purchase.id,
                deal_id=purchase.deal_id,
                voucher_code=purchase.voucher_code or str(purchase.id),
                redeemed_at=now,
                redeemer_id=redeemer.user_id,
            )

        with trace_operation("voucher_redeem", purchase_id=purchase_id):
            try:
                result = await run_transaction(
                    self.session, work, resource=f"purchase {purchase_id}"
                )
            except SettlementError as exc:
                metrics.record_redemption(type(exc).__name__)
                raise

        metrics.record_redemption("redeemed")
        logger.info(
            "voucher_redeemed",
            purchase_id=str(purchase_id),
            redeemer_id=redeemer.user_id,
        )
        return result
