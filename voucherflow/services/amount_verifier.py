"""
Amount Verifier - Checks a client-declared charge against the deal price.

Amounts are compared in integer minor units. A tolerance of one minor unit
absorbs floating-point rounding on the client.
"""

from decimal import ROUND_HALF_UP, Decimal

from structlog import get_logger

from voucherflow.config import settings
from voucherflow.exceptions import AmountMismatchError, InvalidCurrencyError

logger = get_logger(__name__)

MINOR_UNITS_PER_MAJOR = Decimal(100)
AMOUNT_TOLERANCE_MINOR = 1


def to_minor_units(amount: Decimal | int | str) -> int:
    """Convert a major-unit amount to integer minor units, rounding half up."""
    value = Decimal(str(amount)) * MINOR_UNITS_PER_MAJOR
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class AmountVerifier:
    """Validates declared amounts and computes the platform fee."""

    def __init__(
        self,
        allowed_currencies: frozenset[str] | None = None,
        fee_rate: Decimal | None = None,
    ) -> None:
        self.allowed_currencies = (
            allowed_currencies if allowed_currencies is not None else settings.allowed_currency_set
        )
        self.fee_rate = fee_rate if fee_rate is not None else settings.platform_fee_rate

    def verify(
        self,
        declared_amount: Decimal,
        authoritative_price: Decimal,
        currency: str,
        authoritative_currency: str | None = None,
    ) -> int:
        """
        Verify a declared amount and currency.

        When the deal's currency is given, the declared currency must equal it.

        Returns:
            The authoritative amount in minor units

        Raises:
            InvalidCurrencyError: Currency not on the allow-list, or not the deal's currency
            AmountMismatchError: Amounts differ by more than one minor unit
        """
        if currency.lower() not in self.allowed_currencies:
            raise InvalidCurrencyError(currency)
        expected_currency = authoritative_currency.lower() if authoritative_currency else None
        if expected_currency is not None and currency.lower() != expected_currency:
            logger.warning("currency_mismatch", declared=currency, expected=expected_currency)
            raise InvalidCurrencyError(currency, expected=expected_currency)

        expected_minor = to_minor_units(authoritative_price)
        provided_minor = to_minor_units(declared_amount)

        if abs(expected_minor - provided_minor) > AMOUNT_TOLERANCE_MINOR:
            logger.warning(
                "amount_mismatch",
                expected_minor=expected_minor,
                provided_minor=provided_minor,
            )
            raise AmountMismatchError(expected_minor, provided_minor)

        return expected_minor

    def platform_fee(self, expected_minor: int) -> int:
        """Platform fee in minor units, rounded half up."""
        fee = Decimal(expected_minor) * self.fee_rate
        return int(fee.quantize(Decimal(1), rounding=ROUND_HALF_UP))
