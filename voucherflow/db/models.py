"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Merchant(Base):
    """
    ORM model for merchants table.

    A business selling deals. Owns at most one payout sub-account at the
    processor; the onboarding flags mirror the processor's view of it.
    """

    __tablename__ = "merchants"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Owner is the auth subject of the business user
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Payout sub-account
    external_account_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    account_onboarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    account_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "account_status IN ('pending', 'active', 'restricted')",
            name="ck_merchants_account_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Merchant(id={self.id}, account={self.external_account_ref}, "
            f"status={self.account_status})>"
        )


class Deal(Base):
    """
    ORM model for deals table.

    The catalog owns every column except remaining_quantity, which only the
    inventory ledger mutates.
    """

    __tablename__ = "deals"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    merchant_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Authoritative price in major units
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="cad")

    # Inventory
    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expiration_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_deals_remaining_non_negative"),
        CheckConstraint("price > 0", name="ck_deals_price_positive"),
        Index("idx_deals_active_expiration", "is_active", "expiration_time"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Deal(id={self.id}, remaining={self.remaining_quantity})>"


class Buyer(Base):
    """
    ORM model for buyers table.

    Keyed by the auth subject. Created lazily on the first authorization.
    """

    __tablename__ = "buyers"

    # Primary Key - auth subject
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_customer_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Buyer(id={self.id}, customer={self.external_customer_ref})>"


class Purchase(Base):
    """
    ORM model for purchases table.

    One row per purchase attempt. Rows are never deleted; terminal states are
    kept as the voucher record.
    """

    __tablename__ = "purchases"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    buyer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    deal_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Amounts
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    external_authorization_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # True while this purchase holds one unit of the deal's inventory
    inventory_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    voucher_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expiration_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Transition timestamps
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_succeeded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Redemption
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'authorized', 'confirmed', 'redeemed', 'failed')",
            name="ck_purchases_status",
        ),
        CheckConstraint(
            "payment_status IN ('none', 'succeeded', 'failed')",
            name="ck_purchases_payment_status",
        ),
        CheckConstraint("amount_minor > 0", name="ck_purchases_amount_positive"),
        CheckConstraint("platform_fee_minor >= 0", name="ck_purchases_fee_non_negative"),
        CheckConstraint(
            "status <> 'redeemed' OR (redeemed_at IS NOT NULL AND redeemer_id IS NOT NULL)",
            name="ck_purchases_redeemed_stamped",
        ),
        Index("idx_purchases_buyer_created", "buyer_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Purchase(id={self.id}, status={self.status}, "
            f"payment={self.payment_status}, reserved={self.inventory_reserved})>"
        )


class SavedPaymentMethod(Base):
    """
    ORM model for saved_payment_methods table.

    Card fingerprint only; the card itself stays with the processor.
    """

    __tablename__ = "saved_payment_methods"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    buyer_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("buyers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_method_ref: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_customer_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    # Card fingerprint
    last4: Mapped[str] = mapped_column(String(4), nullable=False)
    brand: Mapped[str] = mapped_column(String(32), nullable=False)
    exp_month: Mapped[int] = mapped_column(Integer, nullable=False)
    exp_year: Mapped[int] = mapped_column(Integer, nullable=False)

    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("exp_month BETWEEN 1 AND 12", name="ck_saved_methods_exp_month"),
        Index("idx_saved_methods_buyer_active", "buyer_id", "is_active"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<SavedPaymentMethod(id={self.id}, brand={self.brand}, last4={self.last4})>"


class ProcessedWebhookEvent(Base):
    """
    ORM model for processed_webhook_events table.

    Seen-set of processor event ids. Includes TTL for cleanup of expired
    entries; the processor stops redelivering long before expiry.
    """

    __tablename__ = "processed_webhook_events"

    # Primary Key - processor event id (evt_...)
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_processed_webhook_events_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedWebhookEvent(event_id={self.event_id}, type={self.event_type})>"


class RateLimit(Base):
    """
    ORM model for rate_limits table.

    Fixed-window attempt counters keyed by "{caller}:{action}".
    """

    __tablename__ = "rate_limits"

    # Primary Key
    key: Mapped[str] = mapped_column(String(255), primary_key=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<RateLimit(key={self.key}, attempts={self.attempts})>"
