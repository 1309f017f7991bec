"""
Saved Payment Methods - Cards a buyer kept for future off-session purchases.

Only the card fingerprint is stored. Ownership is checked against the
processor customer on every operation.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.db.models import Buyer, SavedPaymentMethod
from voucherflow.exceptions import (
    PermissionDeniedError,
    ResourceNotFoundError,
    StateError,
)
from voucherflow.models.domain import CallerIdentity
from voucherflow.services.payment_provider import PaymentProvider

logger = get_logger(__name__)


class PaymentMethodService:
    """Save, delete and choose the default saved card."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize with database session and payment provider."""
        self.session = session
        self.provider = provider

    async def _find_buyer(self, buyer_id: str) -> Buyer | None:
        stmt = select(Buyer).where(Buyer.id == buyer_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_method(self, method_ref: str) -> SavedPaymentMethod | None:
        stmt = (
            select(SavedPaymentMethod)
            .where(SavedPaymentMethod.external_method_ref == method_ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _active_methods(self, buyer_id: str) -> list[SavedPaymentMethod]:
        stmt = (
            select(SavedPaymentMethod)
            .where(
                SavedPaymentMethod.buyer_id == buyer_id,
                SavedPaymentMethod.is_active.is_(True),
            )
            .order_by(SavedPaymentMethod.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _owned_method(self, caller: CallerIdentity, method_ref: str) -> SavedPaymentMethod:
        method = await self._find_method(method_ref)
        if method is None:
            raise ResourceNotFoundError("Payment method", method_ref)
        if method.buyer_id != caller.user_id:
            raise PermissionDeniedError("Payment method does not belong to caller")
        return method

    async def _clear_other_defaults(self, method: SavedPaymentMethod) -> None:
        stmt = (
            update(SavedPaymentMethod)
            .where(
                SavedPaymentMethod.buyer_id == method.buyer_id,
                SavedPaymentMethod.id != method.id,
                SavedPaymentMethod.is_default.is_(True),
            )
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def save_payment_method(self, caller: CallerIdentity, authorization_ref: str) -> None:
        """
        Save the card used for one of the caller's authorizations.

        Raises:
            PermissionDeniedError: Authorization or card belongs to someone else
            StateError: Authorization carries no card yet, or caller has no customer
            PaymentProviderError: Processor call failed
        """
        payment = await self.provider.get_payment_status(authorization_ref)
        if payment.metadata_buyer_id != caller.user_id:
            raise PermissionDeniedError("Payment does not belong to caller")
        if not payment.payment_method_ref:
            raise StateError("Payment has no payment method attached")

        buyer = await self._find_buyer(caller.user_id)
        if buyer is None or not buyer.external_customer_ref:
            raise StateError("No processor customer on file")

        card = await self.provider.retrieve_payment_method(payment.payment_method_ref)
        if card.customer_ref != buyer.external_customer_ref:
            raise PermissionDeniedError("Payment method is not attached to caller")

        existing = await self._find_method(card.method_ref)
        if existing is not None and existing.buyer_id != caller.user_id:
            raise PermissionDeniedError("Payment method does not belong to caller")

        has_default = any(m.is_default for m in await self._active_methods(caller.user_id))

        if existing is None:
            existing = SavedPaymentMethod(
                buyer_id=caller.user_id,
                external_method_ref=card.method_ref,
                external_customer_ref=buyer.external_customer_ref,
                is_default=not has_default,
            )
            self.session.add(existing)
        elif not existing.is_active:
            existing.is_default = not has_default

        existing.last4 = card.last4
        existing.brand = card.brand
        existing.exp_month = card.exp_month
        existing.exp_year = card.exp_year
        existing.is_active = True
        await self.session.commit()

        logger.info(
            "payment_method_saved",
            buyer_id=caller.user_id,
            brand=card.brand,
            last4=card.last4,
            is_default=existing.is_default,
        )

    async def delete_payment_method(self, caller: CallerIdentity, method_ref: str) -> None:
        """
        Detach and deactivate a saved card, promoting another card if it was the default.

        The promoted card also becomes the processor customer's default, after
        the local change is committed.

        Raises:
            ResourceNotFoundError: No such saved method
            PermissionDeniedError: Method belongs to someone else
            PaymentProviderError: Processor call failed
        """
        method = await self._owned_method(caller, method_ref)
        if not method.is_active:
            return

        await self.provider.detach_payment_method(method_ref)

        was_default = method.is_default
        method.is_active = False
        method.is_default = False

        promoted: SavedPaymentMethod | None = None
        if was_default:
            remaining = [m for m in await self._active_methods(caller.user_id) if m is not method]
            if remaining:
                promoted = remaining[0]
                promoted.is_default = True

        await self.session.commit()

        if promoted is not None:
            await self.provider.set_default_payment_method(
                promoted.external_customer_ref, promoted.external_method_ref
            )

        logger.info(
            "payment_method_deleted",
            buyer_id=caller.user_id,
            was_default=was_default,
            promoted=promoted.external_method_ref if promoted else None,
        )

    async def set_default_payment_method(self, caller: CallerIdentity, method_ref: str) -> None:
        """
        Make a saved card the caller's single default.

        Raises:
            ResourceNotFoundError: No such saved method
            PermissionDeniedError: Method belongs to someone else
            StateError: Method was deleted
            PaymentProviderError: Processor call failed
        """
        method = await self._owned_method(caller, method_ref)
        if not method.is_active:
            raise StateError("Payment method has been removed")

        await self.provider.set_default_payment_method(method.external_customer_ref, method_ref)

        await self._clear_other_defaults(method)
        method.is_default = True
        await self.session.commit()

        logger.info("payment_method_default_set", buyer_id=caller.user_id)
