"""initial schema

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
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('nickname', sa.String(100), nullable=False),
        sa.Column('device_id', sa.String(255), nullable=True),
        sa.Column('device_suffix', sa.String(16), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
    )
    # Referral lookup by device suffix
    op.create_index('idx_users_device_suffix', 'users', ['device_suffix'])

    # ========================================================================
    # Create payment_orders table
    # ========================================================================
    op.create_table(
        'payment_orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('package_id', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('trade_no', sa.String(64), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('credits > 0', name='ck_payment_orders_credits_positive'),
        sa.CheckConstraint('amount > 0', name='ck_payment_orders_amount_positive'),
        sa.CheckConstraint("status IN ('pending', 'paid')", name='ck_payment_orders_status'),
        sa.UniqueConstraint('order_id', name='uq_payment_orders_order_id'),
    )
    op.create_index('ix_payment_orders_user_id', 'payment_orders', ['user_id'])
    op.create_index('idx_payment_orders_status', 'payment_orders', ['status'])

    # ========================================================================
    # Create used_redemption_codes table (primary key = single use)
    # ========================================================================
    op.create_table(
        'used_redemption_codes',
        sa.Column('code', sa.String(16), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ========================================================================
    # Create redemption_logs table (one per device per month)
    # ========================================================================
    op.create_table(
        'redemption_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('device_id', sa.String(255), nullable=False),
        sa.Column('code', sa.String(16), nullable=False),
        sa.Column('redeemed_month', sa.String(7), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.UniqueConstraint('device_id', 'redeemed_month', name='uq_redemption_device_month'),
    )
    op.create_index('ix_redemption_logs_user_id', 'redemption_logs', ['user_id'])

    # ========================================================================
    # Create device_usage table (one signup bonus per device)
    # ========================================================================
    op.create_table(
        'device_usage',
        sa.Column('device_id', sa.String(255), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ========================================================================
    # Create payment_config table
    # ========================================================================
    op.create_table(
        'payment_config',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payment_config')
    op.drop_table('device_usage')
    op.drop_index('ix_redemption_logs_user_id', table_name='redemption_logs')
    op.drop_table('redemption_logs')
    op.drop_table('used_redemption_codes')
    op.drop_index('idx_payment_orders_status', table_name='payment_orders')
    op.drop_index('ix_payment_orders_user_id', table_name='payment_orders')
    op.drop_table('payment_orders')
    op.drop_index('idx_users_device_suffix', table_name='users')
    op.drop_table('users')
