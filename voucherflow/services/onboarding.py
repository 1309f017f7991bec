"""
Account Onboarding Guard - Gates creation of merchant payout sub-accounts.

Checks run in a fixed order: rate limit, merchant ownership, identity match,
no existing account. Only then is the processor asked to create the account.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.db.models import Merchant
from voucherflow.exceptions import (
    AccountAlreadyExistsError,
    IdentityMismatchError,
    PermissionDeniedError,
    ResourceNotFoundError,
)
from voucherflow.models.api import MerchantAccountStatus
from voucherflow.models.domain import CallerIdentity, MerchantAccountState, OnboardingLink
from voucherflow.services.payment_provider import ConnectedAccount, PaymentProvider
from voucherflow.services.rate_limit import ACCOUNT_CREATE, ACCOUNT_LINK, RateLimiter

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def derive_account_state(account: ConnectedAccount) -> MerchantAccountState:
    """
    Derive the merchant-facing state of a payout account.

    Restricted wins over active: an account with outstanding requirements or a
    disabled reason is restricted even if charges are still enabled.
    """
    restricted = account.disabled_reason is not None or len(account.currently_due) > 0

    if restricted:
        status = MerchantAccountStatus.RESTRICTED
    elif account.charges_enabled:
        status = MerchantAccountStatus.ACTIVE
    else:
        status = MerchantAccountStatus.PENDING

    return MerchantAccountState(
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
        status=status,
        restricted=restricted,
        currently_due=account.currently_due,
    )


class MerchantOnboardingService:
    """Creates and tracks merchant payout sub-accounts."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.rate_limiter = rate_limiter or RateLimiter(session)

    async def _find_merchant(self, merchant_id: UUID, for_update: bool = False) -> Merchant | None:
        stmt = select(Merchant).where(Merchant.id == merchant_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_merchant_by_account(
        self, account_ref: str, for_update: bool = False
    ) -> Merchant | None:
        stmt = select(Merchant).where(Merchant.external_account_ref == account_ref)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _owned_merchant_for_account(self, account_ref: str, caller_id: str) -> Merchant:
        merchant = await self._find_merchant_by_account(account_ref)
        if merchant is None:
            raise ResourceNotFoundError("Merchant account", account_ref)
        if merchant.owner_id != caller_id:
            raise PermissionDeniedError("You don't have permission to access this account")
        return merchant

    def _mirror(self, merchant: Merchant, state: MerchantAccountState) -> None:
        """Copy a derived account state onto a locked merchant row."""
        merchant.account_onboarded = state.onboarded
        merchant.payouts_enabled = state.payouts_enabled
        merchant.account_status = state.status.value

        # Stamped once, the first time the account is fully usable
        if state.onboarded and merchant.onboarding_completed_at is None:
            merchant.onboarding_completed_at = _utc_now()
            logger.info("merchant_onboarding_completed", merchant_id=str(merchant.id))

    async def create_account(
        self,
        merchant_id: UUID,
        caller: CallerIdentity,
        email: str,
        name: str,
        country: str | None = None,
        account_type: str | None = None,
    ) -> str:
        """
        Create a payout sub-account for a merchant owned by the caller.

        Raises:
            RateLimitExceededError: Too many creation attempts
            ResourceNotFoundError: Merchant does not exist
            PermissionDeniedError: Caller does not own the merchant
            IdentityMismatchError: Email or name differ from the merchant record
            AccountAlreadyExistsError: Merchant already has an account
            PaymentProviderError: Processor call failed
        """
        await self.rate_limiter.hit(caller.user_id, ACCOUNT_CREATE)

        merchant = await self._find_merchant(merchant_id)
        if merchant is None:
            raise ResourceNotFoundError("Merchant", str(merchant_id))
        if merchant.owner_id != caller.user_id:
            logger.warning(
                "merchant_account_create_not_owner",
                merchant_id=str(merchant_id),
                caller_id=caller.user_id,
            )
            raise PermissionDeniedError("You don't have permission to manage this business")

        if email != merchant.email:
            raise IdentityMismatchError("email")
        if name != merchant.name:
            raise IdentityMismatchError("name")

        if merchant.external_account_ref:
            raise AccountAlreadyExistsError(merchant.id, merchant.external_account_ref)

        account_ref = await self.provider.create_connected_account(
            email=email,
            business_name=name,
            country=country or settings.connect_default_country,
            account_type=account_type or settings.connect_default_account_type,
            merchant_id=str(merchant.id),
        )

        merchant = await self._find_merchant(merchant_id, for_update=True)
        if merchant is None:
            raise ResourceNotFoundError("Merchant", str(merchant_id))
        if merchant.external_account_ref and merchant.external_account_ref != account_ref:
            raise AccountAlreadyExistsError(merchant.id, merchant.external_account_ref)

        merchant.external_account_ref = account_ref
        merchant.account_status = MerchantAccountStatus.PENDING.value
        merchant.account_onboarded = False
        merchant.payouts_enabled = False
        await self.session.commit()

        logger.info(
            "merchant_account_created",
            merchant_id=str(merchant_id),
            account_ref=account_ref,
        )
        return account_ref

    async def create_onboarding_link(
        self,
        account_ref: str,
        caller: CallerIdentity,
        refresh_url: str | None = None,
        return_url: str | None = None,
    ) -> OnboardingLink:
        """
        Create a hosted onboarding link for the caller's payout account.

        Raises:
            RateLimitExceededError: Too many link requests
            ResourceNotFoundError: No merchant has this account
            PermissionDeniedError: Caller does not own the merchant
            PaymentProviderError: Processor call failed
        """
        await self.rate_limiter.hit(caller.user_id, ACCOUNT_LINK)
        merchant = await self._owned_merchant_for_account(account_ref, caller.user_id)

        link = await self.provider.create_account_link(
            account_ref,
            refresh_url=refresh_url or settings.onboarding_refresh_url,
            return_url=return_url or settings.onboarding_return_url,
        )

        logger.info("onboarding_link_created", merchant_id=str(merchant.id))
        return OnboardingLink(url=link.url, expires_at=link.expires_at)

    async def get_account_status(
        self, account_ref: str, caller: CallerIdentity
    ) -> MerchantAccountState:
        """
        Poll the processor for the account and mirror it onto the merchant.

        Raises:
            ResourceNotFoundError: No merchant has this account
            PermissionDeniedError: Caller does not own the merchant
            PaymentProviderError: Processor call failed
        """
        await self._owned_merchant_for_account(account_ref, caller.user_id)

        account = await self.provider.retrieve_account(account_ref)
        state = derive_account_state(account)

        merchant = await self._find_merchant_by_account(account_ref, for_update=True)
        if merchant is not None:
            self._mirror(merchant, state)
        await self.session.commit()

        logger.info(
            "merchant_account_status_checked",
            account_ref=account_ref,
            status=state.status.value,
            restricted=state.restricted,
        )
        return state

    async def sync_account(self, account: ConnectedAccount) -> bool:
        """
        Mirror a processor-pushed account update. Caller commits.

        Returns False when no merchant has the account.
        """
        merchant = await self._find_merchant_by_account(account.account_ref, for_update=True)
        if merchant is None:
            logger.warning("account_update_unknown_account", account_ref=account.account_ref)
            return False

        state = derive_account_state(account)
        self._mirror(merchant, state)

        logger.info(
            "merchant_account_synced",
            merchant_id=str(merchant.id),
            status=state.status.value,
            onboarded=state.onboarded,
        )
        return True
