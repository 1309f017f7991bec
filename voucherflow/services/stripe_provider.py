"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

The stripe library is synchronous. Every call runs in a worker thread and is
bounded by the processor timeout, so a slow processor never blocks the event
loop or holds a request open indefinitely.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from structlog import get_logger

from voucherflow.exceptions import (
    CardDeclinedError,
    PaymentProviderError,
    WebhookVerificationError,
)
from voucherflow.observability.tracing import trace_operation
from voucherflow.services.payment_provider import (
    AccountLink,
    CardDetails,
    ConnectedAccount,
    PaymentIntent,
    PaymentResult,
    WebhookEvent,
)

logger = get_logger(__name__)

T = TypeVar("T")

PAYMENT_EVENT_PREFIX = "payment_intent."
ACCOUNT_UPDATED_EVENT = "account.updated"


def _metadata_value(obj: Any, key: str) -> str | None:
    """Read one metadata key from a StripeObject, tolerating absence."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None
    try:
        value = metadata[key]
    except (KeyError, TypeError):
        return None
    return str(value) if value is not None else None


def _ref(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _to_payment_result(payment_intent: Any) -> PaymentResult:
    currency = getattr(payment_intent, "currency", None) or ""
    return PaymentResult(
        payment_id=payment_intent.id,
        client_secret=getattr(payment_intent, "client_secret", None),
        status=payment_intent.status,
        amount_minor=getattr(payment_intent, "amount", None) or 0,
        currency=currency.lower(),
        customer_ref=_ref(getattr(payment_intent, "customer", None)),
        payment_method_ref=_ref(getattr(payment_intent, "payment_method", None)),
        metadata_buyer_id=_metadata_value(payment_intent, "buyer_id"),
        metadata_purchase_id=_metadata_value(payment_intent, "purchase_id"),
    )


def _to_connected_account(account: Any) -> ConnectedAccount:
    requirements = getattr(account, "requirements", None)
    currently_due = getattr(requirements, "currently_due", None) or []
    return ConnectedAccount(
        account_ref=account.id,
        charges_enabled=bool(getattr(account, "charges_enabled", False)),
        payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
        details_submitted=bool(getattr(account, "details_submitted", False)),
        currently_due=tuple(str(item) for item in currently_due),
        disabled_reason=getattr(requirements, "disabled_reason", None),
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe, including Connect
    sub-accounts for merchant payouts.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: float = 15.0,
        max_network_retries: int = 2,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for any single Stripe call
            max_network_retries: Retries the stripe library performs on network errors
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            with trace_operation(f"stripe.{operation}", provider="stripe"):
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds
                )
        except TimeoutError as exc:
            logger.error(
                "stripe_call_timeout", operation=operation, timeout_seconds=self.timeout_seconds
            )
            raise PaymentProviderError(
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from exc

    # ========================================================================
    # Payments
    # ========================================================================

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a Stripe PaymentIntent.

        Split payments route the remainder after the application fee to the
        merchant's connected account. Saved-card payments are confirmed
        immediately and off-session.

        Raises:
            CardDeclinedError: Immediate confirmation was declined
            PaymentProviderError: If Stripe API call fails
        """
        params: dict[str, Any] = {
            "amount": intent.amount_minor,
            "currency": intent.currency.lower(),
            "customer": intent.customer_ref,
            "description": intent.description,
            "metadata": {
                "buyer_id": intent.metadata.buyer_id,
                "deal_id": intent.metadata.deal_id,
                "purchase_id": intent.metadata.purchase_id,
                "merchant_id": intent.metadata.merchant_id or "",
                "platform_fee": str(intent.metadata.platform_fee_minor),
            },
            "idempotency_key": intent.idempotency_key,
        }
        if intent.destination_account_ref:
            params["transfer_data"] = {"destination": intent.destination_account_ref}
            params["application_fee_amount"] = intent.application_fee_minor or 0
        if intent.payment_method_ref:
            params["payment_method"] = intent.payment_method_ref
            params["confirm"] = True
            params["off_session"] = True
        else:
            params["automatic_payment_methods"] = {"enabled": True}
            if intent.setup_future_usage:
                params["setup_future_usage"] = "off_session"

        try:
            logger.info(
                "creating_stripe_payment_intent",
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                purchase_id=intent.metadata.purchase_id,
                split=intent.destination_account_ref is not None,
                saved_method=intent.payment_method_ref is not None,
            )

            payment_intent = await self._call(
                "create_payment_intent", stripe.PaymentIntent.create, **params
            )

            logger.info(
                "stripe_payment_intent_created",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )

            return _to_payment_result(payment_intent)

        except stripe.CardError as exc:
            logger.warning(
                "stripe_card_declined",
                purchase_id=intent.metadata.purchase_id,
                decline_code=getattr(exc, "code", None),
            )
            raise CardDeclinedError(
                exc.user_message or "Your card was declined", getattr(exc, "code", None)
            ) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_intent_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe payment failed: {exc}") from exc

    async def get_payment_status(self, payment_id: str) -> PaymentResult:
        """
        Get current status of a payment intent from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            payment_intent = await self._call(
                "get_payment_status", stripe.PaymentIntent.retrieve, payment_id
            )

            logger.info(
                "stripe_payment_status_retrieved",
                payment_intent_id=payment_id,
                status=payment_intent.status,
            )

            return _to_payment_result(payment_intent)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_status_failed",
                payment_intent_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get payment status: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload, byte-for-byte as received
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        obj = event.data.object
        if event.type.startswith(PAYMENT_EVENT_PREFIX):
            last_error = getattr(obj, "last_payment_error", None)
            return WebhookEvent(
                event_id=event.id,
                event_type=event.type,
                payment_id=obj.id,
                payment_status=getattr(obj, "status", None),
                metadata_purchase_id=_metadata_value(obj, "purchase_id"),
                metadata_buyer_id=_metadata_value(obj, "buyer_id"),
                failure_message=getattr(last_error, "message", None),
            )
        if event.type == ACCOUNT_UPDATED_EVENT:
            return WebhookEvent(
                event_id=event.id,
                event_type=event.type,
                account=_to_connected_account(obj),
            )
        return WebhookEvent(event_id=event.id, event_type=event.type)

    # ========================================================================
    # Customers and saved payment methods
    # ========================================================================

    async def create_customer(self, email: str | None, buyer_id: str) -> str:
        """
        Create a Stripe Customer for a buyer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            customer = await self._call(
                "create_customer",
                stripe.Customer.create,
                email=email,
                metadata={"buyer_id": buyer_id},
                idempotency_key=f"customer-{buyer_id}",
            )
            logger.info("stripe_customer_created", customer_id=customer.id, buyer_id=buyer_id)
            customer_id: str = customer.id
            return customer_id

        except stripe.StripeError as exc:
            logger.error("stripe_customer_create_failed", buyer_id=buyer_id, error=str(exc))
            raise PaymentProviderError(f"Failed to create customer: {exc}") from exc

    async def retrieve_payment_method(self, method_ref: str) -> CardDetails:
        """
        Fetch a card payment method.

        Raises:
            PaymentProviderError: If Stripe API call fails or the method is not a card
        """
        try:
            method = await self._call(
                "retrieve_payment_method", stripe.PaymentMethod.retrieve, method_ref
            )
        except stripe.StripeError as exc:
            logger.error("stripe_payment_method_retrieve_failed", error=str(exc))
            raise PaymentProviderError(f"Failed to retrieve payment method: {exc}") from exc

        card = getattr(method, "card", None)
        if card is None:
            raise PaymentProviderError(f"Payment method {method_ref} is not a card")

        return CardDetails(
            method_ref=method.id,
            customer_ref=_ref(getattr(method, "customer", None)),
            brand=card.brand,
            last4=card.last4,
            exp_month=card.exp_month,
            exp_year=card.exp_year,
        )

    async def detach_payment_method(self, method_ref: str) -> None:
        """
        Detach a payment method from its customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            await self._call(
                "detach_payment_method", stripe.PaymentMethod.detach, method_ref
            )
            logger.info("stripe_payment_method_detached", payment_method_id=method_ref)
        except stripe.StripeError as exc:
            logger.error("stripe_payment_method_detach_failed", error=str(exc))
            raise PaymentProviderError(f"Failed to detach payment method: {exc}") from exc

    async def set_default_payment_method(self, customer_ref: str, method_ref: str) -> None:
        """
        Set a customer's default payment method for future charges.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            await self._call(
                "set_default_payment_method",
                stripe.Customer.modify,
                customer_ref,
                invoice_settings={"default_payment_method": method_ref},
            )
            logger.info(
                "stripe_default_payment_method_set",
                customer_id=customer_ref,
                payment_method_id=method_ref,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_default_payment_method_failed", error=str(exc))
            raise PaymentProviderError(f"Failed to set default payment method: {exc}") from exc

    # ========================================================================
    # Connect accounts
    # ========================================================================

    async def create_connected_account(
        self,
        email: str,
        business_name: str,
        country: str,
        account_type: str,
        merchant_id: str,
    ) -> str:
        """
        Create a Stripe Connect account for a merchant.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            account = await self._call(
                "create_connected_account",
                stripe.Account.create,
                type=account_type,
                country=country,
                email=email,
                business_type="company",
                company={"name": business_name},
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                metadata={"merchant_id": merchant_id},
                idempotency_key=f"connect-account-{merchant_id}",
            )
            logger.info(
                "stripe_connected_account_created", account_id=account.id, merchant_id=merchant_id
            )
            account_id: str = account.id
            return account_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_connected_account_failed", merchant_id=merchant_id, error=str(exc)
            )
            raise PaymentProviderError(f"Failed to create connected account: {exc}") from exc

    async def create_account_link(
        self, account_ref: str, refresh_url: str, return_url: str
    ) -> AccountLink:
        """
        Create a hosted onboarding link.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            link = await self._call(
                "create_account_link",
                stripe.AccountLink.create,
                account=account_ref,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            logger.error("stripe_account_link_failed", account_id=account_ref, error=str(exc))
            raise PaymentProviderError(f"Failed to create onboarding link: {exc}") from exc

        return AccountLink(url=link.url, expires_at=datetime.fromtimestamp(link.expires_at, UTC))

    async def retrieve_account(self, account_ref: str) -> ConnectedAccount:
        """
        Fetch the current state of a connected account.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            account = await self._call("retrieve_account", stripe.Account.retrieve, account_ref)
        except stripe.StripeError as exc:
            logger.error("stripe_account_retrieve_failed", account_id=account_ref, error=str(exc))
            raise PaymentProviderError(f"Failed to get account status: {exc}") from exc

        return _to_connected_account(account)
