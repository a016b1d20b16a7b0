"""create catalog tables

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-12 10:00:00.000000

Creates the four catalog collections:
- categories and items (admin-managed lists)
- taken (one claim record per item, keyed by item id)
- pledges (append-only submission audit)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create catalog tables and indexes."""

    op.create_table(
        'categories',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_categories_name', 'categories', ['name'])

    op.create_table(
        'items',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('category_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(500), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_items_category_id', 'items', ['category_id'])

    # No FK to items: a claim survives its item being removed from the catalog
    op.create_table(
        'taken',
        sa.Column('item_id', sa.String(64), nullable=False),
        sa.Column('by_name', sa.String(200), nullable=False),
        sa.Column('by_email', sa.String(320), nullable=False),
        sa.Column('by_phone', sa.String(50), nullable=False),
        sa.Column('item_name', sa.String(500), nullable=False),
        sa.Column('at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('item_id')
    )

    op.create_table(
        'pledges',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('phone', sa.String(50), nullable=False),
        sa.Column('items', JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_pledges_created_at', 'pledges', ['created_at'])
    op.create_index('ix_pledges_email', 'pledges', ['email'])


def downgrade() -> None:
    """Drop catalog tables."""
    op.drop_index('ix_pledges_email', table_name='pledges')
    op.drop_index('ix_pledges_created_at', table_name='pledges')
    op.drop_table('pledges')
    op.drop_table('taken')
    op.drop_index('ix_items_category_id', table_name='items')
    op.drop_table('items')
    op.drop_index('ix_categories_name', table_name='categories')
    op.drop_table('categories')
