"""Add invoice_event_watermarks

Revision ID: 002_add_invoice_event_watermarks
Revises: 001_create_invoices_and_revenues
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_add_invoice_event_watermarks'
down_revision: Union[str, None] = '001_create_invoices_and_revenues'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Newest applied event per invoice; kept after the invoice stops counting
    op.create_table(
        'invoice_event_watermarks',
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_event_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('invoice_id')
    )


def downgrade() -> None:
    op.drop_table('invoice_event_watermarks')
