"""
Tests for PurchaseLifecycle.

Row locking is patched out: get_purchase / lock_purchase return the same mock
purchase, so the tests exercise the transition rules on that object.
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from conftest import (
    BUYER_ID,
    STRANGER_ID,
    create_mock_deal,
    create_mock_purchase,
    create_payment_result,
)
from voucherflow.db.models import Purchase
from voucherflow.exceptions import (
    DealInactiveError,
    InvalidPurchaseStateError,
    PaymentNotCompletedError,
    PaymentProviderError,
    PermissionDeniedError,
)
from voucherflow.models.api import PaymentStatus, PurchaseStatus
from voucherflow.services.lifecycle import PurchaseLifecycle


@pytest.fixture
def lifecycle(db_session: AsyncMock, mock_provider: AsyncMock, mock_ledger: AsyncMock):
    """Lifecycle over mocked session, provider and ledger."""
    return PurchaseLifecycle(db_session, mock_provider, ledger=mock_ledger)


def authorized_purchase(**kwargs):
    return create_mock_purchase(
        status=PurchaseStatus.AUTHORIZED,
        external_authorization_ref="pi_test_123",
        inventory_reserved=True,
        **kwargs,
    )


class TestCreatePurchase:
    """Tests for create_purchase."""

    @pytest.mark.asyncio
    async def test_creates_pending_purchase_priced_from_deal(
        self, lifecycle, db_session, mock_ledger, buyer
    ):
        """New purchase is pending, holds no unit and carries the deal price."""
        deal = create_mock_deal()
        mock_ledger.get_purchasable_deal = AsyncMock(return_value=deal)

        purchase = await lifecycle.create_purchase(buyer, deal.id)

        assert isinstance(purchase, Purchase)
        assert purchase.status == PurchaseStatus.PENDING.value
        assert purchase.payment_status == PaymentStatus.NONE.value
        assert purchase.inventory_reserved is False
        assert purchase.amount == deal.price
        assert purchase.amount_minor == 999
        assert purchase.buyer_id == BUYER_ID
        assert purchase.voucher_code is None
        db_session.add.assert_called_once_with(purchase)
        db_session.commit.assert_awaited_once()
        mock_ledger.reserve_unit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_deal_is_rejected(self, lifecycle, db_session, mock_ledger, buyer):
        """Nothing is written for a deal that cannot be sold."""
        mock_ledger.get_purchasable_deal = AsyncMock(side_effect=DealInactiveError(uuid4()))

        with pytest.raises(DealInactiveError):
            await lifecycle.create_purchase(buyer, uuid4())

        db_session.add.assert_not_called()


class TestConfirm:
    """Tests for confirm."""

    @pytest.mark.asyncio
    async def test_confirm_issues_voucher(self, lifecycle, db_session, mock_provider):
        """Authorized purchase with a succeeded payment becomes confirmed."""
        purchase = authorized_purchase()
        mock_provider.get_payment_status.return_value = create_payment_result(status="succeeded")

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            result = await lifecycle.confirm(purchase.id, BUYER_ID)

        assert result.voucher_code == str(purchase.id)
        assert purchase.status == PurchaseStatus.CONFIRMED.value
        assert purchase.payment_status == PaymentStatus.SUCCEEDED.value
        assert purchase.confirmed_at is not None
        db_session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, lifecycle, mock_provider):
        """Second confirm returns the same voucher without polling the processor."""
        purchase = authorized_purchase()
        mock_provider.get_payment_status.return_value = create_payment_result(status="succeeded")

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            first = await lifecycle.confirm(purchase.id, BUYER_ID)
            second = await lifecycle.confirm(purchase.id, BUYER_ID)

        assert first == second
        mock_provider.get_payment_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_confirm_redeemed_returns_voucher(self, lifecycle, mock_provider):
        """A redeemed voucher is returned as-is."""
        purchase = create_mock_purchase(
            status=PurchaseStatus.REDEEMED, voucher_code="existing-code"
        )

        with patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)):
            result = await lifecycle.confirm(purchase.id, BUYER_ID)

        assert result.voucher_code == "existing-code"
        mock_provider.get_payment_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_processor_failure_fails_purchase(
        self, lifecycle, db_session, mock_provider, mock_ledger
    ):
        """Processor reporting requires_payment_method fails the purchase and frees the unit."""
        purchase = authorized_purchase()
        mock_provider.get_payment_status.return_value = create_payment_result(
            status="requires_payment_method"
        )

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            with pytest.raises(InvalidPurchaseStateError) as exc_info:
                await lifecycle.confirm(purchase.id, BUYER_ID)

        assert exc_info.value.status == PurchaseStatus.FAILED
        assert purchase.status == PurchaseStatus.FAILED.value
        assert purchase.voucher_code is None
        assert purchase.inventory_reserved is False
        mock_ledger.release_unit.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_payment_in_flight(self, lifecycle, db_session, mock_provider):
        """Processing payment cannot be confirmed yet and nothing changes."""
        purchase = authorized_purchase()
        mock_provider.get_payment_status.return_value = create_payment_result(status="processing")

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            with pytest.raises(PaymentNotCompletedError):
                await lifecycle.confirm(purchase.id, BUYER_ID)

        assert purchase.status == PurchaseStatus.AUTHORIZED.value
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recorded_success_skips_poll(self, lifecycle, mock_provider):
        """A webhook-recorded success is enough to confirm."""
        purchase = authorized_purchase(payment_status=PaymentStatus.SUCCEEDED)

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            result = await lifecycle.confirm(purchase.id, BUYER_ID)

        assert result.voucher_code == str(purchase.id)
        mock_provider.get_payment_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_does_not_block(self, lifecycle, mock_provider):
        """An unreachable processor does not block confirmation."""
        purchase = authorized_purchase()
        mock_provider.get_payment_status.side_effect = PaymentProviderError("timeout")

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=purchase)),
        ):
            result = await lifecycle.confirm(purchase.id, BUYER_ID)

        assert purchase.status == PurchaseStatus.CONFIRMED.value
        assert result.voucher_code == str(purchase.id)

    @pytest.mark.asyncio
    async def test_pending_purchase_cannot_be_confirmed(self, lifecycle, mock_provider):
        """Purchase without an authorization is rejected."""
        purchase = create_mock_purchase()

        with patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)):
            with pytest.raises(InvalidPurchaseStateError) as exc_info:
                await lifecycle.confirm(purchase.id, BUYER_ID)

        assert exc_info.value.status == PurchaseStatus.PENDING
        mock_provider.get_payment_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_purchase_cannot_be_confirmed(self, lifecycle):
        """Failed purchase is rejected."""
        purchase = create_mock_purchase(status=PurchaseStatus.FAILED)

        with patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)):
            with pytest.raises(InvalidPurchaseStateError):
                await lifecycle.confirm(purchase.id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_failed_while_polling(self, lifecycle, db_session, mock_provider):
        """Purchase failed by a concurrent webhook is rejected under the lock."""
        purchase = authorized_purchase()
        failed = create_mock_purchase(purchase_id=purchase.id, status=PurchaseStatus.FAILED)
        mock_provider.get_payment_status.return_value = create_payment_result(status="succeeded")

        with (
            patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)),
            patch.object(lifecycle, "lock_purchase", AsyncMock(return_value=failed)),
        ):
            with pytest.raises(InvalidPurchaseStateError):
                await lifecycle.confirm(purchase.id, BUYER_ID)

        assert failed.voucher_code is None
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_buyer_denied(self, lifecycle):
        """Only the buyer can confirm."""
        purchase = authorized_purchase()

        with patch.object(lifecycle, "get_purchase", AsyncMock(return_value=purchase)):
            with pytest.raises(PermissionDeniedError):
                await lifecycle.confirm(purchase.id, STRANGER_ID)


class TestFail:
    """Tests for the fail transition."""

    @pytest.mark.asyncio
    async def test_fail_releases_once(self, lifecycle, mock_ledger):
        """Failing twice gives the unit back only once."""
        purchase = authorized_purchase()

        assert await lifecycle.fail(purchase, reason="declined") is True
        assert await lifecycle.fail(purchase, reason="declined") is False

        mock_ledger.release_unit.assert_awaited_once_with(purchase.deal_id, reason="failed")
        assert purchase.status == PurchaseStatus.FAILED.value
        assert purchase.failure_reason == "declined"

    @pytest.mark.asyncio
    async def test_fail_without_reservation(self, lifecycle, mock_ledger):
        """Pending purchase that never held a unit fails without a release."""
        purchase = create_mock_purchase()

        assert await lifecycle.fail(purchase, reason="declined") is True

        mock_ledger.release_unit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fail_voids_confirmed_voucher(self, lifecycle, mock_ledger):
        """Late failure on a confirmed purchase fails it and frees the unit once."""
        purchase = create_mock_purchase(
            status=PurchaseStatus.CONFIRMED, voucher_code="code-1", inventory_reserved=True
        )

        assert await lifecycle.fail(purchase, reason="late") is True
        assert await lifecycle.fail(purchase, reason="late") is False

        assert purchase.status == PurchaseStatus.FAILED.value
        assert purchase.payment_status == PaymentStatus.FAILED.value
        assert purchase.inventory_reserved is False
        mock_ledger.release_unit.assert_awaited_once_with(purchase.deal_id, reason="failed")

    @pytest.mark.asyncio
    async def test_fail_ignores_redeemed(self, lifecycle, mock_ledger):
        """Redeemed purchase never moves."""
        purchase = create_mock_purchase(status=PurchaseStatus.REDEEMED, voucher_code="code-1")

        assert await lifecycle.fail(purchase, reason="late") is False
        assert purchase.status == PurchaseStatus.REDEEMED.value


class TestMarkAuthorized:
    """Tests for mark_authorized."""

    @pytest.mark.asyncio
    async def test_stamps_authorization(self, lifecycle, mock_ledger):
        """Pending purchase holding a unit becomes authorized."""
        purchase = create_mock_purchase(inventory_reserved=True)

        await lifecycle.mark_authorized(purchase, "pi_new", 999, "CAD", 120)

        assert purchase.status == PurchaseStatus.AUTHORIZED.value
        assert purchase.external_authorization_ref == "pi_new"
        assert purchase.currency == "cad"
        assert purchase.platform_fee_minor == 120
        mock_ledger.reserve_unit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retakes_released_unit(self, lifecycle, mock_ledger):
        """Authorization whose unit was given back takes a fresh one."""
        purchase = create_mock_purchase(inventory_reserved=False)

        await lifecycle.mark_authorized(purchase, "pi_new", 999, "cad", 0)

        mock_ledger.reserve_unit.assert_awaited_once_with(purchase.deal_id)
        assert purchase.inventory_reserved is True

    @pytest.mark.asyncio
    async def test_same_reference_is_noop(self, lifecycle, mock_ledger):
        """Re-stamping the same authorization changes nothing."""
        purchase = authorized_purchase()

        await lifecycle.mark_authorized(purchase, "pi_test_123", 999, "cad", 0)

        assert purchase.status == PurchaseStatus.AUTHORIZED.value
        mock_ledger.reserve_unit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_purchase_cannot_be_authorized(self, lifecycle):
        """Failed purchase rejects a new authorization."""
        purchase = create_mock_purchase(status=PurchaseStatus.FAILED)

        with pytest.raises(InvalidPurchaseStateError):
            await lifecycle.mark_authorized(purchase, "pi_other", 999, "cad", 0)


class TestRecordPaymentSucceeded:
    """Tests for record_payment_succeeded."""

    def test_records_once(self, lifecycle):
        """Second report of the same success is a no-op."""
        purchase = authorized_purchase()

        assert lifecycle.record_payment_succeeded(purchase) is True
        assert lifecycle.record_payment_succeeded(purchase) is False
        assert purchase.status == PurchaseStatus.AUTHORIZED.value
        assert purchase.payment_status == PaymentStatus.SUCCEEDED.value
