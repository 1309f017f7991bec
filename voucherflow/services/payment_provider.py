"""
Payment Provider Protocol - Processor-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class PaymentMetadata:
    """
    Correlation data attached to every authorization.

    Carried on the processor object so that webhooks can find the purchase
    without a lookup.
    """

    buyer_id: str
    deal_id: str
    purchase_id: str
    merchant_id: str | None
    platform_fee_minor: int


@dataclass(frozen=True)
class PaymentIntent:
    """
    Processor-agnostic payment intent.

    Represents a request to authorize a payment. When destination_account_ref
    is set, amount_minor - application_fee_minor is routed to that account.
    """

    amount_minor: int
    currency: str
    description: str
    customer_ref: str
    metadata: PaymentMetadata
    idempotency_key: str
    destination_account_ref: str | None = None
    application_fee_minor: int | None = None
    setup_future_usage: bool = False
    # Saved-card charges confirm immediately, off-session
    payment_method_ref: str | None = None

    def __post_init__(self) -> None:
        """Validate intent constraints."""
        if self.amount_minor <= 0:
            raise ValueError(f"Amount must be positive: {self.amount_minor}")
        if self.application_fee_minor is not None and not (
            0 <= self.application_fee_minor < self.amount_minor
        ):
            raise ValueError(f"Invalid application fee: {self.application_fee_minor}")


@dataclass(frozen=True)
class PaymentResult:
    """
    Processor-agnostic payment state.

    Returned after payment creation and on status polls.
    """

    payment_id: str  # Processor-specific payment ID
    client_secret: str | None  # For client-side payment confirmation
    status: str
    amount_minor: int
    currency: str
    customer_ref: str | None = None
    payment_method_ref: str | None = None
    metadata_buyer_id: str | None = None
    metadata_purchase_id: str | None = None


@dataclass(frozen=True)
class ConnectedAccount:
    """Merchant payout sub-account as reported by the processor."""

    account_ref: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    currently_due: tuple[str, ...]
    disabled_reason: str | None


@dataclass(frozen=True)
class AccountLink:
    """Hosted onboarding link for a payout sub-account."""

    url: str
    expires_at: datetime


@dataclass(frozen=True)
class CardDetails:
    """Card fingerprint of a processor payment method. Never the card number."""

    method_ref: str
    customer_ref: str | None
    brand: str
    last4: str
    exp_month: int
    exp_year: int


@dataclass(frozen=True)
class WebhookEvent:
    """
    Processor-agnostic webhook event.

    Payment events fill the payment fields; account events fill account.
    """

    event_id: str
    event_type: str
    payment_id: str | None = None
    payment_status: str | None = None
    metadata_purchase_id: str | None = None
    metadata_buyer_id: str | None = None
    failure_message: str | None = None
    account: ConnectedAccount | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any processor must implement this interface. Every method raises
    PaymentProviderError when the processor call fails or times out.
    """

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a payment authorization with the processor.

        Raises:
            CardDeclinedError: Immediate confirmation was declined
            PaymentProviderError: If payment creation fails
        """
        ...

    async def get_payment_status(self, payment_id: str) -> PaymentResult:
        """Fetch the processor's current view of a payment."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook event over the exact raw payload.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def create_customer(self, email: str | None, buyer_id: str) -> str:
        """Create a processor customer and return its reference."""
        ...

    async def retrieve_payment_method(self, method_ref: str) -> CardDetails:
        """Fetch a card's fingerprint and owning customer."""
        ...

    async def detach_payment_method(self, method_ref: str) -> None:
        """Detach a payment method from its customer."""
        ...

    async def set_default_payment_method(self, customer_ref: str, method_ref: str) -> None:
        """Make method_ref the customer's default for future charges."""
        ...

    async def create_connected_account(
        self,
        email: str,
        business_name: str,
        country: str,
        account_type: str,
        merchant_id: str,
    ) -> str:
        """Create a payout sub-account and return its reference."""
        ...

    async def create_account_link(
        self, account_ref: str, refresh_url: str, return_url: str
    ) -> AccountLink:
        """Create a hosted onboarding link."""
        ...

    async def retrieve_account(self, account_ref: str) -> ConnectedAccount:
        """Fetch the current state of a payout sub-account."""
        ...
