"""Create account lifecycle tables

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18

WHAT:
    Creates the account record store:
    - users (identity mirror, tombstoned via deleted_at)
    - user_trials (one trial per user, state machine + deletion schedule)
    - billing_customers / billing_subscriptions (billing read model)
    - billing_webhook_events (webhook idempotency)
    - workspace_accounts (external workspace linkage)
    - account_states (derived reconciliation output, CAS via sync_version)
    - deletion_attempts (sweeper audit trail)

WHY:
    Every lifecycle decision is derived from these rows; the reconciler and
    deletion sweeper never read the external systems directly.

REFERENCES:
    - backend/accountsync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


TRIAL_STATUSES = ('active', 'expired', 'converted_to_paid', 'scheduled_for_deletion')
BILLING_STATUSES = (
    'not_started', 'incomplete', 'incomplete_expired', 'trialing', 'active',
    'past_due', 'canceled', 'unpaid', 'paused',
)
WORKSPACE_STATUSES = ('active', 'suspended', 'deleted')
ACCESS_LEVELS = ('none', 'trial', 'pro', 'enterprise', 'suspended')
ACCOUNT_STATUSES = (
    'subscription_active', 'subscription_trialing', 'subscription_past_due',
    'subscription_canceled', 'trial_active', 'trial_expired', 'protected',
)
DELETION_OUTCOMES = ('deleted', 'failed', 'timeout', 'rejected')

ENUMS = (
    ('trialstatusenum', TRIAL_STATUSES),
    ('billingstatusenum', BILLING_STATUSES),
    ('workspaceaccountstatusenum', WORKSPACE_STATUSES),
    ('accesslevelenum', ACCESS_LEVELS),
    ('accountstatusenum', ACCOUNT_STATUSES),
    ('deletionoutcomeenum', DELETION_OUTCOMES),
)


def _enum(name: str, values) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


def upgrade() -> None:
    # 1. Enum types
    for name, values in ENUMS:
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    # 2. users
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('clerk_id', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_users_clerk_id', 'users', ['clerk_id'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # 3. user_trials
    op.create_table(
        'user_trials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('trial_start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_status', _enum('trialstatusenum', TRIAL_STATUSES), nullable=False, server_default='active'),
        sa.Column('deletion_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_user_trials_user_id', 'user_trials', ['user_id'], unique=True)
    op.create_index('ix_user_trials_trial_end_date', 'user_trials', ['trial_end_date'])
    op.create_index('ix_user_trials_trial_status', 'user_trials', ['trial_status'])
    op.create_index('ix_user_trials_deletion_scheduled_at', 'user_trials', ['deletion_scheduled_at'])

    # 4. billing_customers / billing_subscriptions
    op.create_table(
        'billing_customers',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_billing_customers_user_id', 'billing_customers', ['user_id'])
    op.create_index('ix_billing_customers_customer_id', 'billing_customers', ['customer_id'], unique=True)

    op.create_table(
        'billing_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.String(), sa.ForeignKey('billing_customers.customer_id'), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False, unique=True),
        sa.Column('status', _enum('billingstatusenum', BILLING_STATUSES), nullable=False),
        sa.Column('price_id', sa.String(), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_billing_subscriptions_customer_id', 'billing_subscriptions', ['customer_id'])
    op.create_index('ix_billing_subscriptions_status', 'billing_subscriptions', ['status'])

    # 5. billing_webhook_events
    op.create_table(
        'billing_webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_key', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('data_id', sa.String(), nullable=True),
        sa.Column('payload_json', postgresql.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processing_result', sa.String(), server_default='success'),
    )
    op.create_index('ix_billing_webhook_events_event_key', 'billing_webhook_events', ['event_key'], unique=True)

    # 6. workspace_accounts
    op.create_table(
        'workspace_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('external_account_id', sa.String(), nullable=False, unique=True),
        sa.Column('external_email', sa.String(), nullable=False),
        sa.Column('status', _enum('workspaceaccountstatusenum', WORKSPACE_STATUSES), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_workspace_accounts_user_id', 'workspace_accounts', ['user_id'], unique=True)
    op.create_index('ix_workspace_accounts_external_email', 'workspace_accounts', ['external_email'])

    # 7. account_states
    op.create_table(
        'account_states',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), primary_key=True),
        sa.Column('account_status', _enum('accountstatusenum', ACCOUNT_STATUSES), nullable=False, server_default='trial_active'),
        sa.Column('access_level', _enum('accesslevelenum', ACCESS_LEVELS), nullable=False, server_default='trial'),
        sa.Column('has_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_days_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billing_status', sa.String(), nullable=True),
        sa.Column('workspace_status', sa.String(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_version', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_account_states_account_status', 'account_states', ['account_status'])
    op.create_index('ix_account_states_access_level', 'account_states', ['access_level'])
    op.create_index('ix_account_states_last_synced_at', 'account_states', ['last_synced_at'])

    # 8. deletion_attempts
    op.create_table(
        'deletion_attempts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('outcome', _enum('deletionoutcomeenum', DELETION_OUTCOMES), nullable=False),
        sa.Column('stage', sa.String(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
    )
    op.create_index('ix_deletion_attempts_user_id', 'deletion_attempts', ['user_id'])
    op.create_index('ix_deletion_attempts_attempted_at', 'deletion_attempts', ['attempted_at'])


def downgrade() -> None:
    op.drop_index('ix_deletion_attempts_attempted_at', table_name='deletion_attempts')
    op.drop_index('ix_deletion_attempts_user_id', table_name='deletion_attempts')
    op.drop_table('deletion_attempts')

    op.drop_index('ix_account_states_last_synced_at', table_name='account_states')
    op.drop_index('ix_account_states_access_level', table_name='account_states')
    op.drop_index('ix_account_states_account_status', table_name='account_states')
    op.drop_table('account_states')

    op.drop_index('ix_workspace_accounts_external_email', table_name='workspace_accounts')
    op.drop_index('ix_workspace_accounts_user_id', table_name='workspace_accounts')
    op.drop_table('workspace_accounts')

    op.drop_index('ix_billing_webhook_events_event_key', table_name='billing_webhook_events')
    op.drop_table('billing_webhook_events')

    op.drop_index('ix_billing_subscriptions_status', table_name='billing_subscriptions')
    op.drop_index('ix_billing_subscriptions_customer_id', table_name='billing_subscriptions')
    op.drop_table('billing_subscriptions')

    op.drop_index('ix_billing_customers_customer_id', table_name='billing_customers')
    op.drop_index('ix_billing_customers_user_id', table_name='billing_customers')
    op.drop_table('billing_customers')

    op.drop_index('ix_user_trials_deletion_scheduled_at', table_name='user_trials')
    op.drop_index('ix_user_trials_trial_status', table_name='user_trials')
    op.drop_index('ix_user_trials_trial_end_date', table_name='user_trials')
    op.drop_index('ix_user_trials_user_id', table_name='user_trials')
    op.drop_table('user_trials')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_clerk_id', table_name='users')
    op.drop_table('users')

    # Drop enum types
    for name, values in reversed(ENUMS):
        postgresql.ENUM(*values, name=name).drop(op.get_bind(), checkfirst=True)
