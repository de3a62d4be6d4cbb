"""initial credit ledger schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit accounts and the append-only transaction ledger."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('subscription_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('free_credits_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint('lifetime_used >= 0', name='ck_credit_lifetime_used_non_negative'),
    )

    op.create_index('idx_credit_accounts_last_updated', 'credit_accounts', ['last_updated'])

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('transaction_type', sa.String(32), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('story_id', sa.String(255), nullable=True),
        sa.Column('purchase_id', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('metadata_previous_balance', sa.BigInteger(), nullable=True),
        sa.Column('metadata_new_balance', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_credit_transaction_amount_non_zero'),
        sa.CheckConstraint(
            "transaction_type IN ('usage', 'grant', 'refund', 'subscription', 'referral_bonus')",
            name='ck_credit_transaction_type',
        ),
        sa.CheckConstraint("transaction_type <> 'usage' OR amount < 0", name='ck_credit_transaction_usage_negative'),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_credit_transaction_idempotency'),
    )

    # Replay scans read a user's history in created_at order
    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index(
        'idx_credit_transactions_story_id',
        'credit_transactions',
        ['story_id'],
        postgresql_where=sa.text('story_id IS NOT NULL'),
    )


def downgrade() -> None:
    """Drop ledger tables."""
    op.drop_table('credit_transactions')
    op.drop_table('credit_accounts')
