"""initial schema

Revision ID: 2026_10_18_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the settlement schema."""

    # ========================================================================
    # Create merchants table
    # ========================================================================
    op.create_table(
        'merchants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('external_account_ref', sa.String(255), nullable=True),
        sa.Column('account_onboarded', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('payouts_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('account_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('onboarding_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('external_account_ref', name='uq_merchants_external_account_ref'),
        sa.CheckConstraint("account_status IN ('pending', 'active', 'restricted')", name='ck_merchants_account_status'),
    )

    op.create_index('ix_merchants_owner_id', 'merchants', ['owner_id'])

    # ========================================================================
    # Create deals table
    # ========================================================================
    op.create_table(
        'deals',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('merchant_name', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='cad'),
        sa.Column('remaining_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('expiration_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_deals_merchant', ondelete='RESTRICT'),
        sa.CheckConstraint('remaining_quantity >= 0', name='ck_deals_remaining_non_negative'),
        sa.CheckConstraint('price > 0', name='ck_deals_price_positive'),
    )

    op.create_index('ix_deals_merchant_id', 'deals', ['merchant_id'])
    op.create_index('idx_deals_active_expiration', 'deals', ['is_active', 'expiration_time'])

    # ========================================================================
    # Create buyers table
    # ========================================================================
    op.create_table(
        'buyers',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('external_customer_ref', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('external_customer_ref', name='uq_buyers_external_customer_ref'),
    )

    # ========================================================================
    # Create purchases table
    # ========================================================================
    op.create_table(
        'purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('buyer_id', sa.String(255), nullable=False),
        sa.Column('deal_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('platform_fee_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='none'),
        sa.Column('external_authorization_ref', sa.String(255), nullable=True),
        sa.Column('inventory_reserved', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('voucher_code', sa.String(64), nullable=True),
        sa.Column('expiration_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_succeeded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('redeemer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], name='fk_purchases_deal', ondelete='RESTRICT'),
        sa.UniqueConstraint('external_authorization_ref', name='uq_purchases_external_authorization_ref'),
        sa.CheckConstraint(
            "status IN ('pending', 'authorized', 'confirmed', 'redeemed', 'failed')",
            name='ck_purchases_status',
        ),
        sa.CheckConstraint("payment_status IN ('none', 'succeeded', 'failed')", name='ck_purchases_payment_status'),
        sa.CheckConstraint('amount_minor > 0', name='ck_purchases_amount_positive'),
        sa.CheckConstraint('platform_fee_minor >= 0', name='ck_purchases_fee_non_negative'),
        sa.CheckConstraint(
            "status <> 'redeemed' OR (redeemed_at IS NOT NULL AND redeemer_id IS NOT NULL)",
            name='ck_purchases_redeemed_stamped',
        ),
    )

    op.create_index('ix_purchases_buyer_id', 'purchases', ['buyer_id'])
    op.create_index('ix_purchases_deal_id', 'purchases', ['deal_id'])
    op.create_index('idx_purchases_buyer_created', 'purchases', ['buyer_id', 'created_at'])

    # ========================================================================
    # Create saved_payment_methods table
    # ========================================================================
    op.create_table(
        'saved_payment_methods',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('buyer_id', sa.String(255), nullable=False),
        sa.Column('external_method_ref', sa.String(255), nullable=False),
        sa.Column('external_customer_ref', sa.String(255), nullable=False),
        sa.Column('last4', sa.String(4), nullable=False),
        sa.Column('brand', sa.String(32), nullable=False),
        sa.Column('exp_month', sa.Integer(), nullable=False),
        sa.Column('exp_year', sa.Integer(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['buyer_id'], ['buyers.id'], name='fk_saved_methods_buyer', ondelete='CASCADE'),
        sa.UniqueConstraint('external_method_ref', name='uq_saved_methods_external_method_ref'),
        sa.CheckConstraint('exp_month BETWEEN 1 AND 12', name='ck_saved_methods_exp_month'),
    )

    op.create_index('ix_saved_payment_methods_buyer_id', 'saved_payment_methods', ['buyer_id'])
    op.create_index('idx_saved_methods_buyer_active', 'saved_payment_methods', ['buyer_id', 'is_active'])

    # ========================================================================
    # Create processed_webhook_events table
    # ========================================================================
    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_index('idx_processed_webhook_events_expires_at', 'processed_webhook_events', ['expires_at'])

    # ========================================================================
    # Create rate_limits table
    # ========================================================================
    op.create_table(
        'rate_limits',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('window_started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('rate_limits')
    op.drop_table('processed_webhook_events')
    op.drop_table('saved_payment_methods')
    op.drop_table('purchases')
    op.drop_table('buyers')
    op.drop_table('deals')
    op.drop_table('merchants')
