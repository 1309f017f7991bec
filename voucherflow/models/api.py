"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorCode(str, Enum):
    """Caller-facing error codes."""

    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    FAILED_PRECONDITION = "failed-precondition"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    PERMISSION_DENIED = "permission-denied"
    ALREADY_EXISTS = "already-exists"
    INTERNAL = "internal"


class PurchaseStatus(str, Enum):
    """Purchase lifecycle status."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CONFIRMED = "confirmed"
    REDEEMED = "redeemed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Processor-reported payment outcome, tracked apart from the purchase status."""

    NONE = "none"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MerchantAccountStatus(str, Enum):
    """Merchant payout account status."""

    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"


# ============================================================================
# Purchase Models
# ============================================================================


class CreatePurchaseRequest(BaseModel):
    """POST /v1/purchases request body."""

    deal_id: UUID


class PurchaseResponse(BaseModel):
    """Purchase record as returned to its buyer."""

    purchase_id: UUID
    deal_id: UUID
    amount: Decimal
    currency: str
    status: PurchaseStatus
    payment_status: PaymentStatus
    voucher_code: str | None = None
    expiration_time: datetime
    created_at: datetime


class AuthorizePaymentRequest(BaseModel):
    """POST /v1/payments/authorize request body."""

    deal_id: UUID
    purchase_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=4)
    currency: str = Field(..., min_length=3, max_length=3)
    setup_future_usage: bool = Field(
        default=False, description="Save the card for future off-session purchases"
    )
    saved_method_ref: str | None = Field(
        None, min_length=1, max_length=255, description="Charge a previously saved card"
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currencies are compared lower-cased."""
        return v.lower()


class AuthorizePaymentResponse(BaseModel):
    """POST /v1/payments/authorize response. Never carries card data."""

    client_handle: str | None
    authorization_ref: str
    status: str
    voucher_code: str | None = None


class ConfirmPurchaseResponse(BaseModel):
    """POST /v1/purchases/{purchase_id}/confirm response."""

    voucher_code: str
    purchase_id: UUID


# ============================================================================
# Voucher Models
# ============================================================================


class VoucherResponse(BaseModel):
    """GET /v1/vouchers/{purchase_id} response - redacted purchase snapshot."""

    purchase_id: UUID
    deal_id: UUID
    deal_title: str
    merchant_name: str
    amount: Decimal
    currency: str
    status: PurchaseStatus
    voucher_code: str | None
    expiration_time: datetime
    confirmed_at: datetime | None = None
    # Only present when the buyer is the caller
    buyer_id: str | None = None


class RedeemedVoucherResponse(BaseModel):
    """POST /v1/vouchers/{purchase_id}/redeem response."""

    purchase_id: UUID
    deal_id: UUID
    voucher_code: str
    status: PurchaseStatus
    redeemed_at: datetime
    redeemer_id: str


# ============================================================================
# Saved Payment Method Models
# ============================================================================


class SavePaymentMethodRequest(BaseModel):
    """POST /v1/payment-methods request body."""

    authorization_ref: str = Field(..., min_length=1, max_length=255)


class EmptyResponse(BaseModel):
    """Acknowledgement with no payload."""


# ============================================================================
# Merchant Account Models
# ============================================================================


class CreateMerchantAccountRequest(BaseModel):
    """POST /v1/merchants/{merchant_id}/account request body."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    country: str | None = Field(None, min_length=2, max_length=2)
    account_type: Literal["express", "standard", "custom"] | None = Field(None, alias="type")

    @field_validator("country")
    @classmethod
    def normalize_country(cls, v: str | None) -> str | None:
        """Country codes are ISO 3166-1 alpha-2, upper-cased."""
        return v.upper() if v else v


class MerchantAccountResponse(BaseModel):
    """POST /v1/merchants/{merchant_id}/account response."""

    account_ref: str


class OnboardingLinkRequest(BaseModel):
    """POST /v1/merchant-accounts/{account_ref}/onboarding-link request body."""

    refresh_url: str | None = Field(None, min_length=1, max_length=2048)
    return_url: str | None = Field(None, min_length=1, max_length=2048)


class OnboardingLinkResponse(BaseModel):
    """Hosted onboarding link."""

    url: str
    expires_at: datetime


class AccountStatusResponse(BaseModel):
    """GET /v1/merchant-accounts/{account_ref}/status response."""

    charges_enabled: bool
    payouts_enabled: bool
    account_status: MerchantAccountStatus
    restricted: bool
    currently_due: list[str] = Field(default_factory=list)


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """POST /v1/webhooks/stripe response."""

    received: bool = True


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


# ============================================================================
# Error Models
# ============================================================================


class ErrorDetail(BaseModel):
    """Error code and human-readable message."""

    code: ErrorCode
    message: str


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: ErrorDetail
