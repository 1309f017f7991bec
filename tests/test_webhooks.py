"""
Tests for WebhookReconciliationService.

The dedupe insert is patched with an in-memory set of recorded event ids,
which is rolled back together with the handling when dispatch fails.
"""

import time
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from conftest import BUYER_ID, create_mock_purchase
from voucherflow.exceptions import (
    DataIntegrityError,
    InvalidPurchaseStateError,
    PaymentProviderError,
    WebhookVerificationError,
)
from voucherflow.models.api import PaymentStatus, PurchaseStatus
from voucherflow.services.lifecycle import PurchaseLifecycle
from voucherflow.services.payment_provider import ConnectedAccount, WebhookEvent
from voucherflow.services.redemption import check_redeemable
from voucherflow.services.webhooks import (
    ACCOUNT_UPDATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    WebhookOutcome,
    WebhookReconciliationService,
)


@pytest.fixture(autouse=True)
def skip_pruning():
    """Keep the periodic prune out of the way unless a test asks for it."""
    WebhookReconciliationService._last_cleanup = time.time()
    yield
    WebhookReconciliationService._last_cleanup = time.time()


class DedupeStore:
    """Recorded event ids; pending ids only survive a commit."""

    def __init__(self, session: AsyncMock) -> None:
        self.committed: set[str] = set()
        self.pending: set[str] = set()
        session.commit.side_effect = self.commit
        session.rollback.side_effect = self.rollback

    async def mark(self, event: WebhookEvent) -> bool:
        if event.event_id in self.committed or event.event_id in self.pending:
            return False
        self.pending.add(event.event_id)
        return True

    async def commit(self) -> None:
        self.committed |= self.pending
        self.pending.clear()

    async def rollback(self) -> None:
        self.pending.clear()


def payment_event(event_type: str, purchase, event_id: str = "evt_1", payment_id="pi_test_123"):
    succeeded = event_type == PAYMENT_SUCCEEDED
    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        payment_id=payment_id,
        payment_status="succeeded" if succeeded else "requires_payment_method",
        metadata_purchase_id=str(purchase.id),
        failure_message="Your card was declined." if event_type == PAYMENT_FAILED else None,
    )


class Harness:
    """Service wired to a single locked purchase and an in-memory dedupe store."""

    def __init__(self, db_session, mock_provider, mock_ledger, purchase):
        self.purchase = purchase
        self.provider = mock_provider
        self.ledger = mock_ledger
        self.store = DedupeStore(db_session)
        self.lifecycle = PurchaseLifecycle(db_session, mock_provider, ledger=mock_ledger)
        self.onboarding = AsyncMock()
        self.service = WebhookReconciliationService(
            db_session, mock_provider, lifecycle=self.lifecycle, onboarding=self.onboarding
        )
        self.lock = AsyncMock(return_value=purchase)
        self._patches = [
            patch.object(self.lifecycle, "lock_purchase", self.lock),
            patch.object(
                self.lifecycle, "lock_purchase_by_authorization", AsyncMock(return_value=purchase)
            ),
            patch.object(self.service, "_mark_processed", side_effect=self.store.mark),
        ]
        for p in self._patches:
            p.start()

    def stop(self) -> None:
        for p in self._patches:
            p.stop()

    async def deliver(self, event: WebhookEvent) -> WebhookOutcome:
        self.provider.verify_webhook.return_value = event
        return await self.service.handle(b"{}", "t=1,v1=sig")


@pytest.fixture
def authorized():
    return create_mock_purchase(
        status=PurchaseStatus.AUTHORIZED,
        external_authorization_ref="pi_test_123",
        inventory_reserved=True,
    )


@pytest.fixture
def harness(db_session, mock_provider, mock_ledger, authorized):
    h = Harness(db_session, mock_provider, mock_ledger, authorized)
    yield h
    h.stop()


class TestPaymentEvents:
    """Tests for payment_intent events."""

    @pytest.mark.asyncio
    async def test_success_records_payment_only(self, harness, authorized, db_session):
        """Success is recorded but does not confirm the purchase."""
        outcome = await harness.deliver(payment_event(PAYMENT_SUCCEEDED, authorized))

        assert outcome == WebhookOutcome.PROCESSED
        assert authorized.payment_status == PaymentStatus.SUCCEEDED.value
        assert authorized.status == PurchaseStatus.AUTHORIZED.value
        assert authorized.voucher_code is None
        db_session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_failure_fails_and_releases(self, harness, authorized):
        """Failure moves the purchase to failed and frees its unit."""
        outcome = await harness.deliver(payment_event(PAYMENT_FAILED, authorized))

        assert outcome == WebhookOutcome.PROCESSED
        assert authorized.status == PurchaseStatus.FAILED.value
        assert authorized.failure_reason == "Your card was declined."
        harness.ledger.release_unit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(self, harness, authorized):
        """Same event delivered twice is applied once."""
        event = payment_event(PAYMENT_FAILED, authorized)

        first = await harness.deliver(event)
        second = await harness.deliver(event)

        assert first == WebhookOutcome.PROCESSED
        assert second == WebhookOutcome.DUPLICATE
        harness.ledger.release_unit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_replayed_failure_with_new_id_releases_once(self, harness, authorized):
        """A second failure event for an already failed purchase releases nothing."""
        await harness.deliver(payment_event(PAYMENT_FAILED, authorized, event_id="evt_1"))
        outcome = await harness.deliver(
            payment_event(PAYMENT_FAILED, authorized, event_id="evt_2")
        )

        assert outcome == WebhookOutcome.PROCESSED
        harness.ledger.release_unit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_after_unverified_confirmation_voids_voucher(
        self, harness, authorized
    ):
        """Failure reported after an unverified confirmation voids the voucher."""
        harness.provider.get_payment_status.side_effect = PaymentProviderError("unreachable")
        with patch.object(harness.lifecycle, "get_purchase", AsyncMock(return_value=authorized)):
            result = await harness.lifecycle.confirm(authorized.id, BUYER_ID)
        assert result.voucher_code == str(authorized.id)
        assert authorized.status == PurchaseStatus.CONFIRMED.value

        outcome = await harness.deliver(payment_event(PAYMENT_FAILED, authorized))

        assert outcome == WebhookOutcome.PROCESSED
        assert authorized.status == PurchaseStatus.FAILED.value
        assert authorized.payment_status == PaymentStatus.FAILED.value
        harness.ledger.release_unit.assert_awaited_once()
        with pytest.raises(InvalidPurchaseStateError):
            check_redeemable(authorized, datetime.now(UTC))

    @pytest.mark.asyncio
    async def test_other_authorization_is_ignored(self, harness, authorized):
        """Event about an abandoned earlier authorization changes nothing."""
        outcome = await harness.deliver(
            payment_event(PAYMENT_FAILED, authorized, payment_id="pi_abandoned")
        )

        assert outcome == WebhookOutcome.PROCESSED
        assert authorized.status == PurchaseStatus.AUTHORIZED.value
        harness.ledger.release_unit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_purchase_is_acknowledged(self, harness, authorized):
        """Event for a purchase that cannot be found is acknowledged."""
        harness.lifecycle.lock_purchase_by_authorization.return_value = None
        event = WebhookEvent(
            event_id="evt_orphan",
            event_type=PAYMENT_SUCCEEDED,
            payment_id="pi_unknown",
        )

        assert await harness.deliver(event) == WebhookOutcome.PROCESSED
        harness.lock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatch_error_rolls_back_dedupe(self, harness, authorized, db_session):
        """Failed handling leaves the event unrecorded so the redelivery is applied."""
        harness.ledger.release_unit.side_effect = [DataIntegrityError("deal missing"), 10]
        event = payment_event(PAYMENT_FAILED, authorized)

        with pytest.raises(DataIntegrityError):
            await harness.deliver(event)

        db_session.rollback.assert_awaited()
        assert "evt_1" not in harness.store.committed

        # Purchase row is re-read from the database on redelivery
        authorized.status = PurchaseStatus.AUTHORIZED.value
        authorized.inventory_reserved = True

        assert await harness.deliver(event) == WebhookOutcome.PROCESSED
        assert authorized.status == PurchaseStatus.FAILED.value


class TestOtherEvents:
    """Tests for non-payment events."""

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, harness, db_session):
        """Unhandled event types are acknowledged without recording them."""
        outcome = await harness.deliver(
            WebhookEvent(event_id="evt_x", event_type="charge.refunded")
        )

        assert outcome == WebhookOutcome.IGNORED
        assert harness.store.committed == set()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_account_updated_syncs_merchant(self, harness):
        """Account updates are mirrored onto the merchant."""
        account = ConnectedAccount(
            account_ref="acct_test_123",
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
            currently_due=(),
            disabled_reason=None,
        )

        outcome = await harness.deliver(
            WebhookEvent(event_id="evt_acct", event_type=ACCOUNT_UPDATED, account=account)
        )

        assert outcome == WebhookOutcome.PROCESSED
        harness.onboarding.sync_account.assert_awaited_once_with(account)

    @pytest.mark.asyncio
    async def test_bad_signature_applies_nothing(self, harness, authorized, db_session):
        """Verification failure raises before any write."""
        harness.provider.verify_webhook.side_effect = WebhookVerificationError("bad signature")

        with pytest.raises(WebhookVerificationError):
            await harness.service.handle(b"{}", "bad")

        db_session.execute.assert_not_awaited()
        assert authorized.status == PurchaseStatus.AUTHORIZED.value


class TestPruning:
    """Tests for expired dedupe row cleanup."""

    @pytest.mark.asyncio
    async def test_prunes_when_interval_elapsed(self, harness, authorized, db_session):
        """Expired event ids are deleted once the interval has passed."""
        WebhookReconciliationService._last_cleanup = 0
        db_session.execute = AsyncMock(return_value=MagicMock(rowcount=3))

        await harness.deliver(payment_event(PAYMENT_SUCCEEDED, authorized, event_id=str(uuid4())))

        stmt = db_session.execute.await_args.args[0]
        assert "DELETE FROM processed_webhook_events" in str(stmt)
        assert WebhookReconciliationService._last_cleanup > 0

    @pytest.mark.asyncio
    async def test_skips_within_interval(self, harness, authorized, db_session):
        """No delete runs inside the interval."""
        await harness.deliver(payment_event(PAYMENT_SUCCEEDED, authorized))

        db_session.execute.assert_not_awaited()
