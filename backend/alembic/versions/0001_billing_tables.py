"""Create subscription, audit event and webhook idempotency tables

Revision ID: 0001_billing_tables
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer, server_default='0', nullable=False)


def upgrade() -> None:
    """One subscription row per user, its audit log, and processed Grow transactions."""

    op.create_table(
        'user_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),

        # Plan (NULL tier = tracking-only row)
        sa.Column('tier', sa.String(20), nullable=True),
        sa.Column('billing_period', sa.String(20), nullable=True),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),

        # Grow / Morning correlation
        sa.Column('grow_transaction_token', sa.String, nullable=True),
        sa.Column('grow_recurring_id', sa.String, nullable=True),
        sa.Column('grow_last_transaction_code', sa.String, nullable=True),
        sa.Column('morning_customer_id', sa.String, nullable=True),

        # Billing window and cancellation
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_effective_at', sa.DateTime(timezone=True), nullable=True),

        # Scheduled and pending changes
        sa.Column('scheduled_tier_change', sa.String, nullable=True),
        sa.Column('scheduled_billing_period_change', sa.String, nullable=True),
        sa.Column('pending_tier', sa.String, nullable=True),
        sa.Column('pending_billing_period', sa.String, nullable=True),

        # Usage counters
        _counter('usage_applications'),
        _counter('usage_cvs'),
        _counter('usage_interviews'),
        _counter('usage_compensation'),
        _counter('usage_contracts'),
        _counter('usage_ai_avatar_interviews'),
        sa.Column('last_reset_at', sa.DateTime(timezone=True), nullable=True),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'], unique=True)
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    op.create_index('ix_user_subscriptions_tier', 'user_subscriptions', ['tier'])
    op.create_index(
        'ix_user_subscriptions_current_period_end',
        'user_subscriptions',
        ['current_period_end'],
        postgresql_where=sa.text('current_period_end IS NOT NULL'),
    )

    op.create_table(
        'subscription_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('tier', sa.String(20), nullable=True),
        sa.Column('billing_period', sa.String(20), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('grow_transaction_code', sa.String, nullable=True),
        sa.Column('event_data', postgresql.JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index(
        'ix_subscription_events_user_created',
        'subscription_events',
        ['user_id', 'created_at'],
    )
    op.create_index('ix_subscription_events_event_type', 'subscription_events', ['event_type'])

    op.create_table(
        'processed_webhook_transactions',
        sa.Column('transaction_key', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column(
            'processed_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
    )
    # Index for cleanup queries (delete transactions older than X days)
    op.create_index(
        'ix_processed_webhook_transactions_processed_at',
        'processed_webhook_transactions',
        ['processed_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_processed_webhook_transactions_processed_at')
    op.drop_table('processed_webhook_transactions')
    op.drop_index('ix_subscription_events_event_type')
    op.drop_index('ix_subscription_events_user_created')
    op.drop_table('subscription_events')
    op.drop_index('ix_user_subscriptions_current_period_end')
    op.drop_index('ix_user_subscriptions_tier')
    op.drop_index('ix_user_subscriptions_status')
    op.drop_index('ix_user_subscriptions_user_id')
    op.drop_table('user_subscriptions')
