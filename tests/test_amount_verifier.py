"""
Tests for AmountVerifier.

Declared amounts are checked against the deal price in minor units.
"""

from decimal import Decimal

import pytest

from voucherflow.exceptions import AmountMismatchError, InvalidCurrencyError
from voucherflow.services.amount_verifier import AmountVerifier, to_minor_units


@pytest.fixture
def verifier() -> AmountVerifier:
    """Verifier with a fixed allow-list and fee rate."""
    return AmountVerifier(allowed_currencies=frozenset({"cad", "usd"}), fee_rate=Decimal("0.12"))


class TestToMinorUnits:
    """Tests for to_minor_units."""

    def test_whole_amount(self):
        """Major units convert to cents."""
        assert to_minor_units(Decimal("10")) == 1000

    def test_cents(self):
        """Cents are kept exactly."""
        assert to_minor_units(Decimal("9.99")) == 999

    def test_rounds_half_up(self):
        """Sub-cent amounts round half up."""
        assert to_minor_units(Decimal("0.005")) == 1
        assert to_minor_units(Decimal("0.004")) == 0

    def test_accepts_strings(self):
        """String amounts are parsed exactly, not through float."""
        assert to_minor_units("19.99") == 1999


class TestVerify:
    """Tests for AmountVerifier.verify."""

    def test_exact_amount_accepted(self, verifier: AmountVerifier):
        """Exact amount returns the authoritative minor amount."""
        assert verifier.verify(Decimal("9.99"), Decimal("9.99"), "cad") == 999

    def test_one_cent_under_accepted(self, verifier: AmountVerifier):
        """A one-cent difference is tolerated."""
        assert verifier.verify(Decimal("9.98"), Decimal("9.99"), "cad") == 999

    def test_one_cent_over_accepted(self, verifier: AmountVerifier):
        """Tolerance applies in both directions."""
        assert verifier.verify(Decimal("10.00"), Decimal("9.99"), "cad") == 999

    def test_two_cents_rejected(self, verifier: AmountVerifier):
        """Two cents off is rejected."""
        with pytest.raises(AmountMismatchError) as exc_info:
            verifier.verify(Decimal("9.97"), Decimal("9.99"), "cad")

        assert exc_info.value.expected_minor == 999
        assert exc_info.value.provided_minor == 997

    def test_returns_authoritative_not_declared(self, verifier: AmountVerifier):
        """The charge uses the deal price even when the declared amount is within tolerance."""
        assert verifier.verify(Decimal("10.00"), Decimal("9.99"), "usd") == 999

    def test_currency_case_insensitive(self, verifier: AmountVerifier):
        """Currencies are compared lower-cased."""
        assert verifier.verify(Decimal("9.99"), Decimal("9.99"), "CAD") == 999

    def test_unsupported_currency_rejected(self, verifier: AmountVerifier):
        """Currency off the allow-list is rejected."""
        with pytest.raises(InvalidCurrencyError):
            verifier.verify(Decimal("9.99"), Decimal("9.99"), "eur")

    def test_currency_checked_before_amount(self, verifier: AmountVerifier):
        """A bad currency is reported even when the amount is also wrong."""
        with pytest.raises(InvalidCurrencyError):
            verifier.verify(Decimal("1.00"), Decimal("9.99"), "eur")

    def test_currency_must_match_deal(self, verifier: AmountVerifier):
        """An allowed currency that is not the deal's currency is rejected."""
        with pytest.raises(InvalidCurrencyError) as exc_info:
            verifier.verify(Decimal("9.99"), Decimal("9.99"), "usd", "cad")

        assert exc_info.value.expected == "cad"

    def test_deal_currency_case_insensitive(self, verifier: AmountVerifier):
        """Deal and declared currencies are compared lower-cased."""
        assert verifier.verify(Decimal("9.99"), Decimal("9.99"), "Cad", "CAD") == 999


class TestPlatformFee:
    """Tests for AmountVerifier.platform_fee."""

    def test_fee_rounds_half_up(self, verifier: AmountVerifier):
        """12% of 999 is 119.88, rounded to 120."""
        assert verifier.platform_fee(999) == 120

    def test_fee_on_round_amount(self, verifier: AmountVerifier):
        """12% of 1000 is exactly 120."""
        assert verifier.platform_fee(1000) == 120

    def test_zero_rate(self):
        """A zero fee rate takes nothing."""
        verifier = AmountVerifier(allowed_currencies=frozenset({"cad"}), fee_rate=Decimal("0"))
        assert verifier.platform_fee(999) == 0
