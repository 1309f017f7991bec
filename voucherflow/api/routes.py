"""
API Routes - Purchase, payment, voucher and saved-card endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.

Typed service errors propagate to the handlers in voucherflow.api.errors,
which render the standard error body.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from voucherflow.api.dependencies import get_current_caller, get_payment_provider
from voucherflow.db.models import Purchase
from voucherflow.db.session import get_read_db, get_write_db
from voucherflow.models.api import (
    AuthorizePaymentRequest,
    AuthorizePaymentResponse,
    ConfirmPurchaseResponse,
    CreatePurchaseRequest,
    EmptyResponse,
    PaymentStatus,
    PurchaseResponse,
    PurchaseStatus,
    RedeemedVoucherResponse,
    SavePaymentMethodRequest,
    VoucherResponse,
)
from voucherflow.models.domain import AuthorizationOptions, CallerIdentity
from voucherflow.services.authorization import PaymentAuthorizationService
from voucherflow.services.lifecycle import PurchaseLifecycle
from voucherflow.services.payment_methods import PaymentMethodService
from voucherflow.services.payment_provider import PaymentProvider
from voucherflow.services.redemption import RedemptionService

router = APIRouter()


def _purchase_response(purchase: Purchase) -> PurchaseResponse:
    return PurchaseResponse(
        purchase_id=purchase.id,
        deal_id=purchase.deal_id,
        amount=purchase.amount,
        currency=purchase.currency,
        status=PurchaseStatus(purchase.status),
        payment_status=PaymentStatus(purchase.payment_status),
        voucher_code=purchase.voucher_code,
        expiration_time=purchase.expiration_time,
        created_at=purchase.created_at,
    )


# =============================================================================
# Purchases
# =============================================================================


@router.post(
    "/v1/purchases",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase(
    request: CreatePurchaseRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> PurchaseResponse:
    """
    Open a pending purchase for a deal.

    The price is copied from the deal. No inventory is held until payment
    is authorized.
    """
    lifecycle = PurchaseLifecycle(db, provider)
    purchase = await lifecycle.create_purchase(caller, request.deal_id)
    return _purchase_response(purchase)


@router.post("/v1/payments/authorize", response_model=AuthorizePaymentResponse)
async def authorize_payment(
    request: AuthorizePaymentRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> AuthorizePaymentResponse:
    """
    Reserve a unit and create the processor authorization for a purchase.

    With saved_method_ref the saved card is charged off-session and, on
    immediate success, the purchase is confirmed and voucher_code returned.
    """
    service = PaymentAuthorizationService(db, provider)
    if request.saved_method_ref:
        result = await service.authorize_with_saved_method(
            caller,
            deal_id=request.deal_id,
            purchase_id=request.purchase_id,
            amount=request.amount,
            currency=request.currency,
            saved_method_ref=request.saved_method_ref,
        )
    else:
        result = await service.authorize(
            caller,
            deal_id=request.deal_id,
            purchase_id=request.purchase_id,
            amount=request.amount,
            currency=request.currency,
            options=AuthorizationOptions(setup_future_usage=request.setup_future_usage),
        )
    return AuthorizePaymentResponse(
        client_handle=result.client_handle,
        authorization_ref=result.authorization_ref,
        status=result.status,
        voucher_code=result.voucher_code,
    )


@router.post("/v1/purchases/{purchase_id}/confirm", response_model=ConfirmPurchaseResponse)
async def confirm_purchase(
    purchase_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> ConfirmPurchaseResponse:
    """
    Confirm an authorized purchase once the processor reports success.

    Idempotent: confirming twice returns the same voucher code.
    """
    lifecycle = PurchaseLifecycle(db, provider)
    result = await lifecycle.confirm(purchase_id, caller.user_id)
    return ConfirmPurchaseResponse(voucher_code=result.voucher_code, purchase_id=result.purchase_id)


# =============================================================================
# Vouchers
# =============================================================================


@router.get("/v1/vouchers/{purchase_id}", response_model=VoucherResponse)
async def verify_voucher(
    purchase_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    caller: CallerIdentity = Depends(get_current_caller),
) -> VoucherResponse:
    """
    Check a voucher without redeeming it.

    Auth: the buyer or the deal's merchant owner.
    """
    service = RedemptionService(db)
    snapshot = await service.verify(purchase_id, caller)
    return VoucherResponse(
        purchase_id=snapshot.purchase_id,
        deal_id=snapshot.deal_id,
        deal_title=snapshot.deal_title,
        merchant_name=snapshot.merchant_name,
        amount=snapshot.amount,
        currency=snapshot.currency,
        status=snapshot.status,
        voucher_code=snapshot.voucher_code,
        expiration_time=snapshot.expiration_time,
        confirmed_at=snapshot.confirmed_at,
        buyer_id=snapshot.buyer_id,
    )


@router.post("/v1/vouchers/{purchase_id}/redeem", response_model=RedeemedVoucherResponse)
async def redeem_voucher(
    purchase_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    caller: CallerIdentity = Depends(get_current_caller),
) -> RedeemedVoucherResponse:
    """
    Redeem a voucher at the point of sale. Exactly one concurrent call wins.

    Auth: the deal's merchant owner.
    """
    service = RedemptionService(db)
    result = await service.redeem(purchase_id, caller)
    return RedeemedVoucherResponse(
        purchase_id=result.purchase_id,
        deal_id=result.deal_id,
        voucher_code=result.voucher_code,
        status=PurchaseStatus.REDEEMED,
        redeemed_at=result.redeemed_at,
        redeemer_id=result.redeemer_id,
    )


# =============================================================================
# Saved Payment Methods
# =============================================================================


@router.post("/v1/payment-methods", response_model=EmptyResponse)
async def save_payment_method(
    request: SavePaymentMethodRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> EmptyResponse:
    """Keep the card used for one of the caller's payments."""
    service = PaymentMethodService(db, provider)
    await service.save_payment_method(caller, request.authorization_ref)
    return EmptyResponse()


@router.delete("/v1/payment-methods/{method_ref}", response_model=EmptyResponse)
async def delete_payment_method(
    method_ref: str,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> EmptyResponse:
    """Remove a saved card."""
    service = PaymentMethodService(db, provider)
    await service.delete_payment_method(caller, method_ref)
    return EmptyResponse()


@router.post("/v1/payment-methods/{method_ref}/default", response_model=EmptyResponse)
async def set_default_payment_method(
    method_ref: str,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    caller: CallerIdentity = Depends(get_current_caller),
) -> EmptyResponse:
    """Make a saved card the caller's default."""
    service = PaymentMethodService(db, provider)
    await service.set_default_payment_method(caller, method_ref)
    return EmptyResponse()
