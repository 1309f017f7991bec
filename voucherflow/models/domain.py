"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from voucherflow.models.api import MerchantAccountStatus, PurchaseStatus


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller - replaces dict-based auth context."""

    user_id: str
    email: str | None

    def __post_init__(self) -> None:
        """Validate caller identity fields."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class AuthorizationOptions:
    """Optional knobs for a payment authorization."""

    saved_method_ref: str | None = None
    setup_future_usage: bool = False


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of a payment authorization. Never carries card data."""

    client_handle: str | None
    authorization_ref: str
    status: str
    voucher_code: str | None = None


@dataclass(frozen=True)
class ConfirmationResult:
    """Outcome of a purchase confirmation."""

    purchase_id: UUID
    voucher_code: str


@dataclass(frozen=True)
class VoucherSnapshot:
    """Redacted purchase view. External payment references are never included."""

    purchase_id: UUID
    deal_id: UUID
    deal_title: str
    merchant_name: str
    amount: Decimal
    currency: str
    status: PurchaseStatus
    voucher_code: str | None
    expiration_time: datetime
    confirmed_at: datetime | None
    buyer_id: str | None


@dataclass(frozen=True)
class RedemptionResult:
    """Voucher after a successful redemption."""

    purchase_id: UUID
    deal_id: UUID
    voucher_code: str
    redeemed_at: datetime
    redeemer_id: str


@dataclass(frozen=True)
class MerchantAccountState:
    """Payout account state derived from the processor's account object."""

    charges_enabled: bool
    payouts_enabled: bool
    status: MerchantAccountStatus
    restricted: bool
    currently_due: tuple[str, ...]

    @property
    def onboarded(self) -> bool:
        """Fully able to take split payments."""
        return self.charges_enabled and self.payouts_enabled and not self.restricted


@dataclass(frozen=True)
class OnboardingLink:
    """Hosted onboarding URL with its expiry."""

    url: str
    expires_at: datetime
