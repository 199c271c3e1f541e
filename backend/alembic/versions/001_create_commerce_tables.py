"""create_commerce_tables

Revision ID: 001_create_commerce_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_create_commerce_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create user_subscriptions table
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('user_email', sa.String(length=255), nullable=False),
        sa.Column('sanity_id', sa.String(length=255), nullable=True),
        sa.Column('sanity_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('plan_name', sa.String(length=255), nullable=True),
        sa.Column('variant_key', sa.String(length=100), nullable=True),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True, unique=True),
        sa.Column('billing_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('billing_period', sa.String(length=50), nullable=False),
        sa.Column('custom_billing_period_months', sa.Integer(), nullable=True),
        sa.Column('coupon_code', sa.String(length=50), nullable=True),
        sa.Column('coupon_discount_type', sa.String(length=20), nullable=True),
        sa.Column('coupon_discount_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('original_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('cancellation_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_user_subscriptions_id'), 'user_subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_user_id'), 'user_subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_sanity_id'), 'user_subscriptions', ['sanity_id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_stripe_session_id'), 'user_subscriptions', ['stripe_session_id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_stripe_customer_id'), 'user_subscriptions', ['stripe_customer_id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_stripe_subscription_id'), 'user_subscriptions', ['stripe_subscription_id'], unique=False)

    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('sanity_id', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_orders_id'), 'orders', ['id'], unique=False)
    op.create_index(op.f('ix_orders_sanity_id'), 'orders', ['sanity_id'], unique=False)
    op.create_index(op.f('ix_orders_stripe_session_id'), 'orders', ['stripe_session_id'], unique=False)

    # Create order_items table (order_id is the parent's content-store id)
    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.String(length=255), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_order_items_id'), 'order_items', ['id'], unique=False)
    op.create_index(op.f('ix_order_items_order_id'), 'order_items', ['order_id'], unique=False)

    # Create user_appointments table
    op.create_table(
        'user_appointments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('sanity_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.String(length=255), nullable=True),
        sa.Column('is_from_subscription', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_user_appointments_id'), 'user_appointments', ['id'], unique=False)
    op.create_index(op.f('ix_user_appointments_sanity_id'), 'user_appointments', ['sanity_id'], unique=False)
    op.create_index(op.f('ix_user_appointments_user_id'), 'user_appointments', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_appointments_subscription_id'), 'user_appointments', ['subscription_id'], unique=False)

    # Create user_data table
    op.create_table(
        'user_data',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('state', sa.String(length=100), nullable=True),
        sa.Column('dob', sa.String(length=20), nullable=True),
        sa.Column('dose_level', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_user_data_id'), 'user_data', ['id'], unique=False)
    op.create_index(op.f('ix_user_data_email'), 'user_data', ['email'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_user_data_email'), table_name='user_data')
    op.drop_index(op.f('ix_user_data_id'), table_name='user_data')
    op.drop_table('user_data')

    op.drop_index(op.f('ix_user_appointments_subscription_id'), table_name='user_appointments')
    op.drop_index(op.f('ix_user_appointments_user_id'), table_name='user_appointments')
    op.drop_index(op.f('ix_user_appointments_sanity_id'), table_name='user_appointments')
    op.drop_index(op.f('ix_user_appointments_id'), table_name='user_appointments')
    op.drop_table('user_appointments')

    op.drop_index(op.f('ix_order_items_order_id'), table_name='order_items')
    op.drop_index(op.f('ix_order_items_id'), table_name='order_items')
    op.drop_table('order_items')

    op.drop_index(op.f('ix_orders_stripe_session_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_sanity_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_id'), table_name='orders')
    op.drop_table('orders')

    op.drop_index(op.f('ix_user_subscriptions_stripe_subscription_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_stripe_customer_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_stripe_session_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_sanity_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_user_id'), table_name='user_subscriptions')
    op.drop_index(op.f('ix_user_subscriptions_id'), table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
