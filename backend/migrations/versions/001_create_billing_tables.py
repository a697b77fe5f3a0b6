"""Create billing and entitlement tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('credits', sa.Numeric(14, 2), nullable=False, server_default='0'),
            sa.Column('subscription_tier', sa.String(length=20), nullable=False, server_default='free'),
            sa.Column('trial_started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative')
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'catalog_products' not in existing_tables:
        op.create_table(
            'catalog_products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor_product_id', sa.String(length=255), nullable=False),
            sa.Column('product_class', sa.String(length=20), nullable=False),
            sa.Column('internal_reference', sa.String(length=255), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=True),
            sa.Column('title', sa.String(length=255), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_catalog_products_processor_product_id', 'catalog_products', ['processor_product_id'], unique=True)
        op.create_index('ix_catalog_products_internal_reference', 'catalog_products', ['internal_reference'], unique=True)

    if 'modules' not in existing_tables:
        op.create_table(
            'modules',
            sa.Column('id', sa.String(length=100), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('access_type', sa.String(length=30), nullable=False, server_default='free'),
            sa.Column('required_tier', sa.String(length=20), nullable=True),
            sa.Column('internal_reference', sa.String(length=255), nullable=True),
            sa.Column('booking_url', sa.String(length=500), nullable=True),
            sa.Column('order_index', sa.Integer(), nullable=False, server_default='0'),
            sa.PrimaryKeyConstraint('id')
        )

    if 'module_purchases' not in existing_tables:
        op.create_table(
            'module_purchases',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('internal_reference', sa.String(length=255), nullable=False),
            sa.Column('charge_id', sa.String(length=255), nullable=True),
            sa.Column('amount_cents', sa.Integer(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'internal_reference', name='uq_module_purchases_user_reference')
        )
        op.create_index('ix_module_purchases_user_id', 'module_purchases', ['user_id'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('tier', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
            sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processor_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
        op.create_index('ix_subscriptions_processor_subscription_id', 'subscriptions', ['processor_subscription_id'])

    if 'credit_transactions' not in existing_tables:
        op.create_table(
            'credit_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('amount', sa.Numeric(14, 2), nullable=False),
            sa.Column('transaction_type', sa.String(length=50), nullable=False),
            sa.Column('transaction_metadata', sa.JSON(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
        op.create_index('ix_credit_transactions_created_at', 'credit_transactions', ['created_at'])
        op.create_index('ix_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])

    if 'checkout_sessions' not in existing_tables:
        op.create_table(
            'checkout_sessions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('processor_session_id', sa.String(length=255), nullable=False),
            sa.Column('product_class', sa.String(length=20), nullable=False),
            sa.Column('internal_reference', sa.String(length=255), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            _created_at(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_checkout_sessions_processor_session_id', 'checkout_sessions', ['processor_session_id'], unique=True)
        op.create_index('ix_checkout_sessions_user_id', 'checkout_sessions', ['user_id'])
        op.create_index('ix_checkout_sessions_user_status', 'checkout_sessions', ['user_id', 'status'])

    if 'payment_events' not in existing_tables:
        op.create_table(
            'payment_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('channel', sa.String(length=20), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('internal_reference', sa.String(length=255), nullable=True),
            sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_payment_events_event_id', 'payment_events', ['event_id'], unique=True)
        op.create_index('ix_payment_events_user_id', 'payment_events', ['user_id'])

    if 'webhook_logs' not in existing_tables:
        op.create_table(
            'webhook_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(length=50), nullable=False, server_default='fanbases'),
            sa.Column('channel', sa.String(length=20), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=True),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('status', sa.String(length=30), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_webhook_logs_event_type', 'webhook_logs', ['event_type'])
        op.create_index('ix_webhook_logs_event_id', 'webhook_logs', ['event_id'])
        op.create_index('ix_webhook_logs_user_id', 'webhook_logs', ['user_id'])
        op.create_index('ix_webhook_logs_status', 'webhook_logs', ['status'])

    if 'special_access' not in existing_tables:
        op.create_table(
            'special_access',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('access_type', sa.String(length=50), nullable=False),
            sa.Column('granted_by', sa.String(length=255), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'access_type', name='uq_special_access_user_type')
        )
        op.create_index('ix_special_access_user_id', 'special_access', ['user_id'])

    if 'processor_customers' not in existing_tables:
        op.create_table(
            'processor_customers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('processor_customer_id', sa.String(length=255), nullable=False),
            sa.Column('payment_method_id', sa.String(length=255), nullable=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_processor_customers_user_id', 'processor_customers', ['user_id'], unique=True)
        op.create_index('ix_processor_customers_processor_customer_id', 'processor_customers', ['processor_customer_id'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    # Children first
    for table in (
        'processor_customers', 'special_access', 'webhook_logs', 'payment_events',
        'checkout_sessions', 'credit_transactions', 'subscriptions', 'module_purchases',
        'modules', 'catalog_products', 'users'
    ):
        if table in existing_tables:
            op.drop_table(table)
