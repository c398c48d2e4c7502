"""settlement core schema: commission rules, trust inputs, wallets/ledger, settlements

Revision ID: 4f1d0c2a9b10
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1d0c2a9b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ---- commission ----
    op.create_table(
        'commission_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('commission_type', sa.String(16), nullable=False),
        sa.Column('commission_value', sa.Numeric(14, 2), nullable=False),
        sa.Column('job_type', sa.String(64)),
        sa.Column('city', sa.String(120)),
        sa.Column('region', sa.String(120)),
        sa.Column('dealer_id', sa.String(64)),
        sa.Column('service_category_id', sa.String(64)),
        sa.Column('service_sub_category_id', sa.String(64)),
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_to', sa.DateTime()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.String(64)),
        sa.Column('notes', sa.Text()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_commission_rules_resolve', 'commission_rules',
                    ['is_active', 'effective_from', 'effective_to'], unique=False)
    op.create_index('ix_commission_rules_dealer', 'commission_rules', ['dealer_id'], unique=False)

    op.create_table(
        'minimum_margin_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('minimum_margin_percent', sa.Numeric(6, 2)),
        sa.Column('minimum_margin_amount', sa.Numeric(14, 2)),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_reject', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('apply_to_service', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('apply_to_product', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_to', sa.DateTime()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # ---- trust inputs (mirrors of marketplace tables) ----
    op.create_table(
        'technicians',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('rating', sa.Numeric(3, 1)),
        sa.Column('total_jobs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_jobs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_kyc_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        'dealers',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('rating', sa.Numeric(3, 1)),
    )
    op.create_table(
        'job_reviews',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reviewee_id', sa.String(64), nullable=False),
        sa.Column('reviewee_type', sa.String(16), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_hidden', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_job_reviews_reviewee', 'job_reviews', ['reviewee_id', 'reviewee_type'], unique=False)
    op.create_table(
        'jobs',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('technician_id', sa.String(64)),
        sa.Column('dealer_id', sa.String(64)),
        sa.Column('status', sa.String(32), nullable=False),
    )
    op.create_index('ix_jobs_technician_id', 'jobs', ['technician_id'], unique=False)
    op.create_index('ix_jobs_dealer_id', 'jobs', ['dealer_id'], unique=False)

    # ---- wallets / ledger ----
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('owner_role', sa.String(16), nullable=False),
        sa.Column('available_balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('locked_balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('has_bank_details', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('owner_id', 'owner_role', name='uq_wallets_owner'),
        sa.CheckConstraint('available_balance >= 0', name='ck_wallets_available_nonneg'),
        sa.CheckConstraint('locked_balance >= 0', name='ck_wallets_locked_nonneg'),
    )
    op.create_table(
        'job_payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_id', sa.Integer(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('job_id', sa.String(64), unique=True),
        sa.Column('gross_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('commission_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('immediate_payment', sa.Numeric(14, 2), nullable=False),
        sa.Column('hold_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('warranty_end_date', sa.DateTime()),
        sa.Column('status', sa.String(16), nullable=False, server_default='LOCKED'),
        sa.Column('is_frozen', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('freeze_reason', sa.String(255)),
        sa.Column('release_reason', sa.String(32)),
        sa.Column('released_at', sa.DateTime()),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_job_payments_due', 'job_payments', ['status', 'warranty_end_date'], unique=False)
    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_id', sa.Integer(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('bank_reference', sa.String(120)),
        sa.Column('failure_reason', sa.String(255)),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('processed_at', sa.DateTime()),
    )
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_id', sa.Integer(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('type', sa.String(8), nullable=False),
        sa.Column('bucket', sa.String(16), nullable=False),
        sa.Column('category', sa.String(32), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('description', sa.String(255), nullable=False, server_default=''),
        sa.Column('reference', sa.String(120)),
        sa.Column('status', sa.String(16), nullable=False, server_default='POSTED'),
        sa.Column('job_payment_id', sa.Integer(), sa.ForeignKey('job_payments.id')),
        sa.Column('withdrawal_id', sa.Integer(), sa.ForeignKey('withdrawals.id')),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_ledger_entries_amount_pos'),
    )
    op.create_index('ix_ledger_entries_wallet', 'ledger_entries', ['wallet_id', 'id'], unique=False)

    # ---- settlements ----
    op.create_table(
        'settlements',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('total_sales', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('commission', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('deductions', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('settlement_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('cycle', sa.String(16), nullable=False, server_default='T+7'),
        sa.Column('due_date', sa.Date()),
        sa.Column('sale_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hold_reason', sa.String(255)),
        sa.Column('payment_reference', sa.String(120)),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('approved_at', sa.DateTime()),
        sa.Column('paid_at', sa.DateTime()),
        sa.UniqueConstraint('seller_id', 'period_start', 'period_end', name='uq_settlements_seller_period'),
    )
    op.create_index('ix_settlements_status', 'settlements', ['status'], unique=False)
    op.create_table(
        'seller_sales',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('order_ref', sa.String(120), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('commission', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('deductions', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('sold_at', sa.DateTime(), nullable=False),
        sa.Column('settlement_id', sa.Integer(), sa.ForeignKey('settlements.id')),
    )
    op.create_index('ix_seller_sales_unsettled', 'seller_sales',
                    ['seller_id', 'settlement_id', 'sold_at'], unique=False)


def downgrade() -> None:
    for table in ('seller_sales', 'settlements', 'ledger_entries', 'withdrawals', 'job_payments',
                  'wallets', 'jobs', 'job_reviews', 'dealers', 'technicians',
                  'minimum_margin_rules', 'commission_rules'):
        op.drop_table(table)
