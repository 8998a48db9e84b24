"""
create payment recovery tables

Revision ID: 0001_recovery
Revises:
Create Date: 2026-10-17

Subscriptions, payments, retry attempts, dunning campaigns and the durable
timer queue that drives retries and campaign steps.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '0001_recovery'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")


def _audit_columns():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('owner_id', sa.Uuid, nullable=False),
        sa.Column('owner_email', sa.String(255), nullable=True),
        sa.Column('owner_phone', sa.String(32), nullable=True),
        sa.Column('plan', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('billing_cycle', sa.String(20), server_default='monthly', nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('payment_method', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('auto_renew', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('episode_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('requires_manual_review', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index('ix_subscriptions_owner_id', 'subscriptions', ['owner_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('subscription_id', sa.Uuid,
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('status', sa.String(20), server_default='created', nullable=False),
        sa.Column('payment_method', sa.String(255), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.String(50), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])

    op.create_table(
        'retry_attempts',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('subscription_id', sa.Uuid,
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_id', sa.Uuid,
                  sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('attempt_number', sa.Integer, nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), server_default='scheduled', nullable=False),
        sa.Column('retry_method', sa.String(20), server_default='automatic', nullable=False),
        sa.Column('grace_period_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('failure_reason', sa.String(50), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('outcome', JSON_TYPE, nullable=True),
        *_audit_columns(),
    )
    op.create_index('ix_retry_attempts_subscription_id', 'retry_attempts', ['subscription_id'])
    op.create_index('ix_retry_attempts_payment_id', 'retry_attempts', ['payment_id'])
    op.create_index('ix_retry_attempts_status', 'retry_attempts', ['status'])
    # At most one scheduled retry per subscription
    op.create_index(
        'uq_retry_attempts_scheduled_per_subscription',
        'retry_attempts',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'scheduled'"),
        sqlite_where=sa.text("status = 'scheduled'"),
    )

    op.create_table(
        'dunning_campaigns',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('subscription_id', sa.Uuid,
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('campaign_type', sa.String(30), server_default='payment_failed', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('resolution', sa.String(30), nullable=True),
        sa.Column('current_step', sa.Integer, server_default='1', nullable=False),
        sa.Column('total_steps', sa.Integer, nullable=False),
        sa.Column('next_action_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('communications_sent', sa.Integer, server_default='0', nullable=False),
        sa.Column('response_received', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_action_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.CheckConstraint(
            'current_step >= 1 AND current_step <= total_steps',
            name='ck_dunning_campaigns_step_within_bounds',
        ),
    )
    op.create_index('ix_dunning_campaigns_subscription_id', 'dunning_campaigns', ['subscription_id'])
    op.create_index('ix_dunning_campaigns_status', 'dunning_campaigns', ['status'])
    # At most one active campaign per subscription
    op.create_index(
        'uq_dunning_campaigns_active_per_subscription',
        'dunning_campaigns',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'scheduled_timers',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('timer_type', sa.String(50), nullable=False),
        sa.Column('subscription_id', sa.Uuid,
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=True),
        sa.Column('deduplication_key', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer, server_default='5', nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        *_audit_columns(),
    )
    op.create_index('ix_scheduled_timers_subscription_id', 'scheduled_timers', ['subscription_id'])
    op.create_index('ix_scheduled_timers_deduplication_key', 'scheduled_timers',
                    ['deduplication_key'], unique=True)
    op.create_index('ix_scheduled_timers_status', 'scheduled_timers', ['status'])
    op.create_index('ix_scheduled_timers_scheduled_for', 'scheduled_timers', ['scheduled_for'])
    # Poll query: due pending timers
    op.create_index(
        'ix_scheduled_timers_pending_due',
        'scheduled_timers',
        ['status', 'scheduled_for'],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index('ix_scheduled_timers_pending_due', table_name='scheduled_timers')
    op.drop_table('scheduled_timers')
    op.drop_index('uq_dunning_campaigns_active_per_subscription', table_name='dunning_campaigns')
    op.drop_table('dunning_campaigns')
    op.drop_index('uq_retry_attempts_scheduled_per_subscription', table_name='retry_attempts')
    op.drop_table('retry_attempts')
    op.drop_table('payments')
    op.drop_table('subscriptions')
