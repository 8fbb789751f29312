"""initial ledger schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscription, token ledger and purchase tables."""

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('iap_product_id', sa.String(255), nullable=True),
        sa.Column('iap_original_transaction_id', sa.String(255), nullable=True),
        sa.Column('iap_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('account_id', name='uq_subscriptions_account'),
        sa.CheckConstraint("tier IN ('free', 'pro', 'unlimited')", name='ck_subscription_tier'),
        sa.CheckConstraint(
            "status IN ('inactive', 'active', 'past_due', 'canceled', 'unknown')",
            name='ck_subscription_status',
        ),
    )

    op.create_index(
        'uq_subscriptions_stripe_customer', 'subscriptions', ['stripe_customer_id'],
        unique=True, postgresql_where=sa.text('stripe_customer_id IS NOT NULL'),
    )
    op.create_index(
        'idx_subscriptions_iap_original_tx', 'subscriptions', ['iap_original_transaction_id'],
        postgresql_where=sa.text('iap_original_transaction_id IS NOT NULL'),
    )
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    # ========================================================================
    # Create token_balances table
    # ========================================================================
    op.create_table(
        'token_balances',
        sa.Column('account_id', sa.String(255), primary_key=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_earned', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_spent', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_token_balance_non_negative'),
        sa.CheckConstraint('lifetime_earned >= 0', name='ck_token_earned_non_negative'),
        sa.CheckConstraint('lifetime_spent >= 0', name='ck_token_spent_non_negative'),
        sa.CheckConstraint('balance = lifetime_earned - lifetime_spent', name='ck_token_balance_consistency'),
    )

    # ========================================================================
    # Create token_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'token_transactions',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=False), primary_key=True),
        sa.Column('transaction_id', sa.Uuid(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_token_tx_amount_nonzero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_token_tx_balance_non_negative'),
        sa.CheckConstraint(
            "(transaction_type = 'consume' AND amount < 0) OR (transaction_type = 'grant' AND amount > 0)",
            name='ck_token_tx_sign',
        ),
        sa.UniqueConstraint('transaction_id', name='uq_token_transactions_transaction_id'),
    )

    op.create_index('ix_token_transactions_account_id', 'token_transactions', ['account_id'])
    op.create_index('idx_token_tx_account_created', 'token_transactions', ['account_id', 'created_at', 'id'])
    op.create_index(
        'idx_token_tx_reference_id', 'token_transactions', ['reference_id'],
        postgresql_where=sa.text('reference_id IS NOT NULL'),
    )

    # ========================================================================
    # Create appraisal_purchases table (idempotency records)
    # ========================================================================
    op.create_table(
        'appraisal_purchases',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('stripe_session_id', sa.String(255), nullable=False),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('credits_granted', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('stripe_session_id', name='uq_appraisal_purchases_session'),
        sa.CheckConstraint('credits_granted > 0', name='ck_purchase_credits_positive'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_purchase_amount_non_negative'),
    )

    op.create_index('ix_appraisal_purchases_account_id', 'appraisal_purchases', ['account_id'])


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table('appraisal_purchases')
    op.drop_table('token_transactions')
    op.drop_table('token_balances')
    op.drop_table('subscriptions')
