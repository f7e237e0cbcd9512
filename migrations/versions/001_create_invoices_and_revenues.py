"""Create invoices, revenues and revenue_contributions

Revision ID: 001_create_invoices_and_revenues
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_create_invoices_and_revenues'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True, comment='Billed customer'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='Amount in cents'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('effective_date', sa.Date(), nullable=False, comment='Date that decides the revenue period'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('amount >= 0', name='ck_invoices_amount_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_invoices_customer_id'), 'invoices', ['customer_id'], unique=False)
    op.create_index(op.f('ix_invoices_status'), 'invoices', ['status'], unique=False)
    op.create_index(op.f('ix_invoices_effective_date'), 'invoices', ['effective_date'], unique=False)

    # One row per calendar month; period is the upsert conflict target
    op.create_table(
        'revenues',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('period', sa.Date(), nullable=False),
        sa.Column('invoice_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False, server_default='0', comment='Sum of eligible invoice amounts in cents'),
        sa.Column('calculation_source', sa.String(length=50), nullable=False, server_default='invoice_event'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('invoice_count >= 0', name='ck_revenues_invoice_count_non_negative'),
        sa.CheckConstraint('total_amount >= 0', name='ck_revenues_total_amount_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_revenues_period'), 'revenues', ['period'], unique=True)

    op.create_table(
        'revenue_contributions',
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('period', sa.Date(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('invoice_id')
    )
    op.create_index(op.f('ix_revenue_contributions_period'), 'revenue_contributions', ['period'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_revenue_contributions_period'), table_name='revenue_contributions')
    op.drop_table('revenue_contributions')
    op.drop_index(op.f('ix_revenues_period'), table_name='revenues')
    op.drop_table('revenues')
    op.drop_index(op.f('ix_invoices_effective_date'), table_name='invoices')
    op.drop_index(op.f('ix_invoices_status'), table_name='invoices')
    op.drop_index(op.f('ix_invoices_customer_id'), table_name='invoices')
    op.drop_table('invoices')
