"""Membership billing schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_membership_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create catalog, ledger, entitlement and webhook bookkeeping tables."""

    op.create_table(
        'accounts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('full_name', sa.String(200)),
        sa.Column('relation_to_product', sa.String(100)),
        *_timestamps(),
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)

    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.String()),

        # Pricing (major units)
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False),
        sa.Column('price_yearly', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='DKK', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),

        # Stripe IDs
        sa.Column('stripe_product_id', sa.String(255)),
        sa.Column('stripe_price_monthly_id', sa.String(255)),
        sa.Column('stripe_price_yearly_id', sa.String(255)),
        *_timestamps(),
    )
    op.create_index('ix_products_code', 'products', ['code'], unique=True)
    op.create_index('ix_products_is_active', 'products', ['is_active'])

    op.create_table(
        'gift_codes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('discount_percentage', sa.Numeric(5, 2)),
        sa.Column('discount_amount', sa.Numeric(10, 2)),
        sa.Column('product_code', sa.String(64)),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('valid_to', sa.DateTime(timezone=True)),
        sa.Column('usage_limit', sa.Integer, server_default='1', nullable=False),
        sa.Column('used_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('used_count <= usage_limit', name='ck_gift_codes_usage_within_limit'),
        sa.CheckConstraint('usage_limit >= 1', name='ck_gift_codes_usage_limit_positive'),
    )
    op.create_index('ix_gift_codes_code', 'gift_codes', ['code'], unique=True)

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('account_id', sa.Uuid(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('product_id', sa.Uuid(), sa.ForeignKey('products.id'), nullable=False),

        # Stripe correlation IDs
        sa.Column('external_payment_id', sa.String(255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('stripe_subscription_id', sa.String(255)),
        sa.Column('stripe_session_id', sa.String(255)),
        sa.Column('stripe_invoice_id', sa.String(255)),

        # Amounts
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='DKK', nullable=False),
        sa.Column('original_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), server_default='0', nullable=False),

        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('payment_method', sa.String(50)),
        sa.Column('gift_code_id', sa.Uuid(), sa.ForeignKey('gift_codes.id')),
        sa.Column('billing_cycle', sa.String(20), server_default='monthly', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_payments_external_payment_id', 'payments', ['external_payment_id'], unique=True)
    op.create_index('ix_payments_account_id', 'payments', ['account_id'])
    op.create_index('ix_payments_product_id', 'payments', ['product_id'])
    op.create_index('ix_payments_stripe_customer_id', 'payments', ['stripe_customer_id'])
    op.create_index('ix_payments_stripe_subscription_id', 'payments', ['stripe_subscription_id'])
    op.create_index('ix_payments_stripe_session_id', 'payments', ['stripe_session_id'])
    op.create_index('ix_payments_stripe_invoice_id', 'payments', ['stripe_invoice_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])

    op.create_table(
        'gift_code_usages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('gift_code_id', sa.Uuid(), sa.ForeignKey('gift_codes.id'), nullable=False),
        sa.Column('account_id', sa.Uuid(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id'), nullable=False, unique=True),
        sa.Column('used_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_gift_code_usages_gift_code_id', 'gift_code_usages', ['gift_code_id'])
    op.create_index('ix_gift_code_usages_account_id', 'gift_code_usages', ['account_id'])

    op.create_table(
        'entitlements',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('account_id', sa.Uuid(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('product_id', sa.Uuid(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('package_code', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('status_event_at', sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'product_id', name='uq_entitlements_account_product'),
    )
    op.create_index('ix_entitlements_account_id', 'entitlements', ['account_id'])
    op.create_index('ix_entitlements_product_id', 'entitlements', ['product_id'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), server_default='processed', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_processed_webhook_events_processed_at', 'processed_webhook_events', ['processed_at'])

    op.create_table(
        'unprocessed_webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('reason', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('attempts', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_unprocessed_webhook_events_event_id', 'unprocessed_webhook_events', ['event_id'])
    op.create_index('ix_unprocessed_webhook_events_resolved_at', 'unprocessed_webhook_events', ['resolved_at'])


def downgrade() -> None:
    """Drop membership billing tables."""
    op.drop_table('unprocessed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_table('entitlements')
    op.drop_table('gift_code_usages')
    op.drop_table('payments')
    op.drop_table('gift_codes')
    op.drop_table('products')
    op.drop_table('accounts')
