"""
Merchant Routes - Payout account onboarding.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from voucherflow.api.dependencies import get_current_caller, get_payment_provider
from voucherflow.db.session import get_write_db
from voucherflow.models.api import (
    AccountStatusResponse,
    CreateMerchantAccountRequest,
    MerchantAccountResponse,
    OnboardingLinkRequest,
    OnboardingLinkResponse,
)
from voucherflow.models.domain import CallerIdentity
from voucherflow.services.onboarding import MerchantOnboardingService
from voucherflow.services.payment_provider import PaymentProvider

router = APIRouter(tags=["merchants"])


@router.post("/v1/merchants/{merchant_id}/account", response_model=MerchantAccountResponse)
async def create_merchant_account(
    merchant_id: UUID,
    request: CreateMerchantAccountRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> MerchantAccountResponse:
    """
    Create the payout sub-account for a merchant.

    Email and name must match the merchant record. One account per merchant.
    Auth: the merchant owner.
    """
    service = MerchantOnboardingService(db, provider)
    account_ref = await service.create_account(
        merchant_id,
        caller,
        email=request.email,
        name=request.name,
        country=request.country,
        account_type=request.account_type,
    )
    return MerchantAccountResponse(account_ref=account_ref)


@router.post(
    "/v1/merchant-accounts/{account_ref}/onboarding-link",
    response_model=OnboardingLinkResponse,
)
async def create_onboarding_link(
    account_ref: str,
    request: OnboardingLinkRequest | None = None,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> OnboardingLinkResponse:
    """Create a hosted onboarding link for the merchant owner."""
    request = request or OnboardingLinkRequest()
    service = MerchantOnboardingService(db, provider)
    link = await service.create_onboarding_link(
        account_ref,
        caller,
        refresh_url=request.refresh_url,
        return_url=request.return_url,
    )
    return OnboardingLinkResponse(url=link.url, expires_at=link.expires_at)


@router.get(
    "/v1/merchant-accounts/{account_ref}/status",
    response_model=AccountStatusResponse,
)
async def get_account_status(
    account_ref: str,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> AccountStatusResponse:
    """
    Poll the processor for account readiness.

    The result is mirrored onto the merchant record, so a write database
    is required.
    """
    service = MerchantOnboardingService(db, provider)
    state = await service.get_account_status(account_ref, caller)
    return AccountStatusResponse(
        charges_enabled=state.charges_enabled,
        payouts_enabled=state.payouts_enabled,
        account_status=state.status,
        restricted=state.restricted,
        currently_due=list(state.currently_due),
    )
