"""
Inventory Ledger - Atomic reserve/release of one unit of a deal's stock.

The decrement is a single conditional UPDATE ... RETURNING, never a
read-then-write, so concurrent callers racing for the last unit get exactly
one success. The ledger does not commit; callers own the transaction.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.db.models import Deal
from voucherflow.exceptions import (
    DataIntegrityError,
    DealExpiredError,
    DealInactiveError,
    DealNotFoundError,
    OutOfStockError,
)
from voucherflow.observability.metrics import metrics

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InventoryLedger:
    """Owns Deal.remaining_quantity. Nothing else writes that column."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def _find_deal(self, deal_id: UUID) -> Deal | None:
        stmt = select(Deal).where(Deal.id == deal_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_purchasable_deal(self, deal_id: UUID) -> Deal:
        """
        Load a deal that can currently be sold.

        Raises:
            DealNotFoundError: Deal does not exist
            DealInactiveError: Deal was deactivated
            DealExpiredError: Deal's expiration time has passed
        """
        deal = await self._find_deal(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        if not deal.is_active:
            raise DealInactiveError(deal_id)
        if _utc_now() > deal.expiration_time:
            raise DealExpiredError(deal_id, deal.expiration_time)
        return deal

    async def _decrement_remaining(self, deal_id: UUID) -> int | None:
        """Take one unit if any is left. Returns the new quantity, or None when sold out."""
        stmt = (
            update(Deal)
            .where(Deal.id == deal_id, Deal.remaining_quantity > 0)
            .values(remaining_quantity=Deal.remaining_quantity - 1, updated_at=_utc_now())
            .returning(Deal.remaining_quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _increment_remaining(self, deal_id: UUID) -> int | None:
        stmt = (
            update(Deal)
            .where(Deal.id == deal_id)
            .values(remaining_quantity=Deal.remaining_quantity + 1, updated_at=_utc_now())
            .returning(Deal.remaining_quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def reserve_unit(self, deal_id: UUID) -> int:
        """
        Reserve exactly one unit of a deal.

        Returns:
            Remaining quantity after the reservation

        Raises:
            DealNotFoundError: Deal does not exist
            DealInactiveError: Deal was deactivated
            DealExpiredError: Deal's expiration time has passed
            OutOfStockError: No units left
        """
        await self.get_purchasable_deal(deal_id)

        remaining = await self._decrement_remaining(deal_id)
        if remaining is None:
            metrics.record_reservation("out_of_stock")
            logger.info("unit_reservation_out_of_stock", deal_id=str(deal_id))
            raise OutOfStockError(deal_id)

        metrics.record_reservation("success")
        logger.info("unit_reserved", deal_id=str(deal_id), remaining=remaining)
        return remaining

    async def release_unit(self, deal_id: UUID, reason: str = "failed") -> int:
        """
        Return one previously reserved unit to stock.

        Callers guarantee at most one release per reservation.

        Raises:
            DataIntegrityError: Deal row disappeared while a unit was held
        """
        remaining = await self._increment_remaining(deal_id)
        if remaining is None:
            logger.error("unit_release_deal_missing", deal_id=str(deal_id))
            raise DataIntegrityError(f"Cannot release unit of missing deal {deal_id}")

        metrics.record_release(reason)
        logger.info("unit_released", deal_id=str(deal_id), remaining=remaining, reason=reason)
        return remaining
