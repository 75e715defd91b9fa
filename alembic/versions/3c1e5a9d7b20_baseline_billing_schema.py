"""baseline_billing_schema

Revision ID: 3c1e5a9d7b20
Revises:
Create Date: 2026-09-28 10:14:02.118734

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1e5a9d7b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, pending plan changes, quota ledger and webhook replay tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
        sa.Column('plan_id', sa.String(), server_default='starter', nullable=False),
        sa.Column('plan_status', sa.String(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('stripe_price_id', sa.String(), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_stripe_customer_id'), 'users', ['stripe_customer_id'], unique=False)
    op.create_index(op.f('ix_users_stripe_subscription_id'), 'users', ['stripe_subscription_id'], unique=True)

    op.create_table(
        'pending_plan_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('target_plan_id', sa.String(), nullable=False),
        sa.Column('effective_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('stripe_schedule_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pending_plan_changes_id'), 'pending_plan_changes', ['id'], unique=False)
    op.create_index(op.f('ix_pending_plan_changes_user_id'), 'pending_plan_changes', ['user_id'], unique=True)

    op.create_table(
        'quota_cycles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('cycle_id', sa.String(length=7), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_questions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('plan_limit_snapshot', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'cycle_id', name='uq_quota_cycles_user_cycle'),
    )
    op.create_index(op.f('ix_quota_cycles_id'), 'quota_cycles', ['id'], unique=False)
    op.create_index(op.f('ix_quota_cycles_user_id'), 'quota_cycles', ['user_id'], unique=False)

    op.create_table(
        'quota_subject_counts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('cycle_id', sa.String(length=7), nullable=False),
        sa.Column('subject', sa.String(), nullable=False),
        sa.Column('count', sa.Integer(), server_default='0', nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'cycle_id', 'subject', name='uq_quota_subject_counts_user_cycle_subject'),
    )
    op.create_index(op.f('ix_quota_subject_counts_id'), 'quota_subject_counts', ['id'], unique=False)
    op.create_index('idx_quota_subject_counts_user_cycle', 'quota_subject_counts', ['user_id', 'cycle_id'], unique=False)

    op.create_table(
        'billing_webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('outcome', sa.String(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_billing_webhook_events_id'), 'billing_webhook_events', ['id'], unique=False)
    op.create_index(op.f('ix_billing_webhook_events_event_id'), 'billing_webhook_events', ['event_id'], unique=True)
    op.create_index(op.f('ix_billing_webhook_events_user_id'), 'billing_webhook_events', ['user_id'], unique=False)


def downgrade() -> None:
    """Drop all billing tables."""
    op.drop_table('billing_webhook_events')
    op.drop_table('quota_subject_counts')
    op.drop_table('quota_cycles')
    op.drop_table('pending_plan_changes')
    op.drop_table('users')
