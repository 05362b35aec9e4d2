"""add merchant_map table for learned categorizations

Revision ID: 001_merchant_map
Revises:
Create Date: 2025-01-15 14:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_merchant_map'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One learned correction per (tenant, normalized merchant)
    op.create_table(
        'merchant_map',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),

        sa.Column('org_id', sa.Text, nullable=False, comment='Owning tenant (organization)'),
        sa.Column('merchant_name', sa.Text, nullable=False, comment='Normalized merchant name'),

        sa.Column('category', sa.Text, nullable=False, comment='User-corrected category'),
        sa.Column('subcategory', sa.Text, nullable=True, comment='User-corrected subcategory (NULL = none)'),

        sa.Column('created_by', sa.Text, nullable=True, comment='User whose correction produced this row'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('org_id', 'merchant_name', name='uq_merchant_map_org_merchant'),
        sa.CheckConstraint("category <> ''", name='ck_merchant_map_category_not_empty'),
    )

    # Tenant listing / stats ordered by recency
    op.create_index('idx_merchant_map_org_updated', 'merchant_map', ['org_id', sa.text('updated_at DESC')])


def downgrade() -> None:
    op.drop_index('idx_merchant_map_org_updated', table_name='merchant_map')
    op.drop_table('merchant_map')
