"""initial sale schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create invoices, ledger_state and settlements tables."""

    # ========================================================================
    # Create invoices table
    # ========================================================================
    op.create_table(
        'invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('rgb_invoice', sa.String(2048), nullable=False),
        sa.Column('tier', sa.String(10), nullable=False),
        sa.Column('batch_count', sa.Integer(), nullable=False),
        sa.Column('amount_sats', sa.BigInteger(), nullable=False),
        sa.Column('token_amount', sa.BigInteger(), nullable=False),
        sa.Column('processor_invoice_id', sa.String(255), nullable=False),
        sa.Column('payment_request', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('transfer_artifact', sa.Text(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint('batch_count > 0', name='ck_invoice_batch_count_positive'),
        sa.CheckConstraint('amount_sats > 0', name='ck_invoice_amount_positive'),
        sa.CheckConstraint('token_amount > 0', name='ck_invoice_token_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'settling', 'settled', 'expired', 'settlement_failed')",
            name='ck_invoice_status',
        ),
        sa.CheckConstraint("tier IN ('bronze', 'silver', 'gold')", name='ck_invoice_tier'),
        sa.UniqueConstraint('idempotency_key', name='uq_invoices_idempotency_key'),
        sa.UniqueConstraint('processor_invoice_id', name='uq_invoices_processor_invoice_id'),
    )

    op.create_index('idx_invoices_status', 'invoices', ['status'])
    op.create_index('idx_invoices_created_at', 'invoices', ['created_at'])

    # ========================================================================
    # Create ledger_state table (single row)
    # ========================================================================
    op.create_table(
        'ledger_state',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('total_supply', sa.BigInteger(), nullable=False),
        sa.Column('total_distributed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        sa.CheckConstraint('id = 1', name='ck_ledger_single_row'),
        sa.CheckConstraint('total_distributed >= 0', name='ck_ledger_distributed_non_negative'),
        sa.CheckConstraint('total_distributed <= total_supply', name='ck_ledger_distributed_within_supply'),
    )

    # ========================================================================
    # Create settlements table
    # ========================================================================
    op.create_table(
        'settlements',
        sa.Column('invoice_id', sa.String(36), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), primary_key=True),
        sa.Column('token_amount', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        sa.CheckConstraint('token_amount > 0', name='ck_settlement_token_amount_positive'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('settlements')
    op.drop_table('ledger_state')
    op.drop_index('idx_invoices_created_at', table_name='invoices')
    op.drop_index('idx_invoices_status', table_name='invoices')
    op.drop_table('invoices')
