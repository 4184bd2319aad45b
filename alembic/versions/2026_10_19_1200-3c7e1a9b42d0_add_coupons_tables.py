"""add_coupons_tables

Revision ID: 3c7e1a9b42d0
Revises: 
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7e1a9b42d0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Coupon definitions, owned by the admin CMS
    op.create_table(
        'coupons',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False, unique=True),
        sa.Column('name_en', sa.String(255), nullable=False, server_default=''),
        sa.Column('name_he', sa.String(255), nullable=False, server_default=''),
        sa.Column('description_en', sa.Text()),
        sa.Column('description_he', sa.Text()),
        sa.Column('discount_type', sa.String(32), nullable=False),
        sa.Column('discount_value', sa.Numeric(10, 2)),
        sa.Column('min_cart_value', sa.Numeric(10, 2)),
        sa.Column('starts_at', sa.DateTime()),
        sa.Column('expires_at', sa.DateTime()),
        sa.Column('usage_limit', sa.Integer()),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_limit_per_user', sa.Integer()),
        sa.Column('per_user_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stackable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_apply', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('eligible_products', sa.Text()),
        sa.Column('bogo_buy_quantity', sa.Integer()),
        sa.Column('bogo_get_quantity', sa.Integer()),
        sa.Column('bogo_eligible_skus', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.CheckConstraint(
            "discount_type IN ('percent_all', 'percent_specific', 'fixed', 'bogo')",
            name='ck_coupons_discount_type',
        ),
    )

    # Auto-apply candidates are read on every cart without a coupon
    op.create_index('idx_coupons_auto_apply', 'coupons', ['auto_apply', 'is_active'])
    op.create_index('idx_coupons_expires_at', 'coupons', ['expires_at'])

    # Per-user redemption counters
    op.create_table(
        'coupon_redemptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('coupon_id', sa.String(36), sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_identifier', sa.String(255), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime()),
        sa.UniqueConstraint('coupon_id', 'user_identifier', name='uq_coupon_redemptions_user'),
    )


def downgrade() -> None:
    op.drop_table('coupon_redemptions')
    op.drop_index('idx_coupons_expires_at', table_name='coupons')
    op.drop_index('idx_coupons_auto_apply', table_name='coupons')
    op.drop_table('coupons')
