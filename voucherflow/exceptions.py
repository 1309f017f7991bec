"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every exception carries the caller-facing ErrorCode it maps to. Business-rule
violations surface their code and message; anything mapped to INTERNAL is
logged in full and returned to callers as a generic error.
"""

from datetime import datetime
from uuid import UUID

from voucherflow.models.api import ErrorCode, PurchaseStatus


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Validation Errors
# ============================================================================


class ValidationError(SettlementError):
    """Raised when input is malformed or missing."""

    code = ErrorCode.INVALID_ARGUMENT


class AmountMismatchError(ValidationError):
    """Raised when the declared amount differs from the deal price by more than 1 minor unit."""

    def __init__(self, expected_minor: int, provided_minor: int) -> None:
        self.expected_minor = expected_minor
        self.provided_minor = provided_minor
        super().__init__(
            f"Amount mismatch. Expected {expected_minor / 100:.2f}, got {provided_minor / 100:.2f}"
        )


class InvalidCurrencyError(ValidationError):
    """Raised when a currency is not on the allow-list or is not the deal's currency."""

    def __init__(self, currency: str, expected: str | None = None) -> None:
        self.currency = currency
        self.expected = expected
        if expected is None:
            super().__init__(f"Unsupported currency: {currency}")
        else:
            super().__init__(f"Currency {currency} does not match deal currency {expected}")


class IdentityMismatchError(ValidationError):
    """Raised when call-time identity data does not match the registered merchant."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} must match the registered merchant {field}")


class WebhookVerificationError(ValidationError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Authentication / Authorization Errors
# ============================================================================


class AuthenticationError(SettlementError):
    """Raised when the caller could not be authenticated."""

    code = ErrorCode.UNAUTHENTICATED

    def __init__(self, message: str = "Must be authenticated") -> None:
        super().__init__(message)


class PermissionDeniedError(SettlementError):
    """Raised when the caller does not own the resource they act on."""

    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, message: str = "You don't have permission to access this resource") -> None:
        super().__init__(message)


# ============================================================================
# Not Found Errors
# ============================================================================


class ResourceNotFoundError(SettlementError):
    """Raised when a requested resource doesn't exist."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class DealNotFoundError(ResourceNotFoundError):
    """Raised when a deal doesn't exist."""

    def __init__(self, deal_id: UUID) -> None:
        self.deal_id = deal_id
        super().__init__("Deal", str(deal_id))


class PurchaseNotFoundError(ResourceNotFoundError):
    """Raised when a purchase doesn't exist."""

    def __init__(self, purchase_id: UUID) -> None:
        self.purchase_id = purchase_id
        super().__init__("Purchase", str(purchase_id))


# ============================================================================
# State Errors
# ============================================================================


class StateError(SettlementError):
    """Raised when an entity is in the wrong state for the requested operation."""

    code = ErrorCode.FAILED_PRECONDITION


class DealInactiveError(StateError):
    """Raised when a deal is no longer active."""

    def __init__(self, deal_id: UUID) -> None:
        self.deal_id = deal_id
        super().__init__("Deal is no longer active")


class DealExpiredError(StateError):
    """Raised when a deal's expiration time has passed."""

    def __init__(self, deal_id: UUID, expired_at: datetime) -> None:
        self.deal_id = deal_id
        self.expired_at = expired_at
        super().__init__("Deal has expired")


class OutOfStockError(StateError):
    """Raised when a deal has no remaining units."""

    code = ErrorCode.RESOURCE_EXHAUSTED

    def __init__(self, deal_id: UUID) -> None:
        self.deal_id = deal_id
        super().__init__("Deal is sold out")


class InvalidPurchaseStateError(StateError):
    """Raised when a purchase is not in a state that permits the operation."""

    def __init__(self, purchase_id: UUID, status: PurchaseStatus, message: str) -> None:
        self.purchase_id = purchase_id
        self.status = status
        super().__init__(message)


class VoucherExpiredError(StateError):
    """Raised when a voucher is past its expiration time."""

    def __init__(self, purchase_id: UUID, expired_at: datetime) -> None:
        self.purchase_id = purchase_id
        self.expired_at = expired_at
        super().__init__("Voucher has expired")


class MerchantNotOnboardedError(StateError):
    """Raised when a merchant cannot receive split payments yet."""

    def __init__(self, merchant_id: UUID) -> None:
        self.merchant_id = merchant_id
        super().__init__("Business payment setup incomplete")


class PaymentNotCompletedError(StateError):
    """Raised when the processor reports a payment that is still in flight."""

    def __init__(self, authorization_ref: str, processor_status: str) -> None:
        self.authorization_ref = authorization_ref
        self.processor_status = processor_status
        super().__init__(f"Payment not completed (status: {processor_status})")


# ============================================================================
# Conflict Errors
# ============================================================================


class ConflictError(SettlementError):
    """Raised when the operation already happened."""

    code = ErrorCode.ALREADY_EXISTS


class AlreadyRedeemedError(ConflictError):
    """Raised when a voucher has already been redeemed."""

    def __init__(self, purchase_id: UUID, redeemed_at: datetime | None) -> None:
        self.purchase_id = purchase_id
        self.redeemed_at = redeemed_at
        super().__init__("Voucher has already been redeemed")


class AccountAlreadyExistsError(ConflictError):
    """Raised when a merchant already has a payout account."""

    def __init__(self, merchant_id: UUID, account_ref: str) -> None:
        self.merchant_id = merchant_id
        self.account_ref = account_ref
        super().__init__("Merchant already has a payout account")


# ============================================================================
# Rate Limiting
# ============================================================================


class RateLimitExceededError(SettlementError):
    """Raised when a caller exhausted the attempt budget for an action."""

    code = ErrorCode.RESOURCE_EXHAUSTED

    def __init__(self, action: str, window_minutes: int) -> None:
        self.action = action
        self.window_minutes = window_minutes
        super().__init__(f"Too many attempts. Please try again in {window_minutes} minutes.")


# ============================================================================
# External Gateway Errors
# ============================================================================


class ExternalGatewayError(SettlementError):
    """Raised when a call to an external collaborator fails."""

    code = ErrorCode.INTERNAL


class PaymentProviderError(ExternalGatewayError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Payment provider error: {message}")


class CardDeclinedError(ExternalGatewayError):
    """Raised for card errors the buyer can act on (declined, expired, insufficient funds)."""

    code = ErrorCode.INVALID_ARGUMENT

    def __init__(self, message: str, decline_code: str | None = None) -> None:
        self.decline_code = decline_code
        super().__init__(message)


# ============================================================================
# Internal Errors
# ============================================================================


class DataIntegrityError(SettlementError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")


class ConcurrencyError(SettlementError):
    """Raised when a transaction kept conflicting after all retry attempts."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")
