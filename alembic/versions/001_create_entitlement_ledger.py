"""Create entitlement ledger tables

Revision ID: 001_create_entitlement_ledger
Revises:
Create Date: 2024-01-15 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_entitlement_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create scan, credit, subscription, device link and webhook event tables."""

    # Append-only scan ledger
    op.create_table(
        'scan_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('principal', sa.String(), nullable=False),
        sa.Column('action_kind', sa.String(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('correlation_id', sa.String(), nullable=False),
        sa.Column('scan_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scan_records_principal', 'scan_records', ['principal'])
    op.create_index('ix_scan_records_action_kind', 'scan_records', ['action_kind'])
    op.create_index('ix_scan_records_occurred_at', 'scan_records', ['occurred_at'])
    op.create_index('ix_scan_records_correlation_id', 'scan_records', ['correlation_id'], unique=True)

    # Bonus credit grants
    op.create_table(
        'credit_grants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('principal', sa.String(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.Column('source_reference', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('pack_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_grants_principal', 'credit_grants', ['principal'])
    op.create_index('ix_credit_grants_source_reference', 'credit_grants', ['source_reference'], unique=True)

    # Current subscription per principal
    op.create_table(
        'subscription_states',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('principal', sa.String(), nullable=False),
        sa.Column('tier', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('billing_interval', sa.String(), nullable=True),
        sa.Column('external_subscription_ref', sa.String(), nullable=True),
        sa.Column('external_customer_ref', sa.String(), nullable=True),
        sa.Column('last_event_id', sa.String(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_subscription_states_principal', 'subscription_states', ['principal'], unique=True)
    op.create_index('ix_subscription_states_tier', 'subscription_states', ['tier'])
    op.create_index('ix_subscription_states_status', 'subscription_states', ['status'])
    op.create_index('ix_subscription_states_external_subscription_ref', 'subscription_states',
                    ['external_subscription_ref'])
    op.create_index('ix_subscription_states_external_customer_ref', 'subscription_states',
                    ['external_customer_ref'])

    # Merge-on-login links
    op.create_table(
        'device_links',
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('linked_at', sa.DateTime(), nullable=False),
        sa.Column('scans_moved', sa.Integer(), nullable=False),
        sa.Column('credits_moved', sa.Integer(), nullable=False),
        sa.Column('subscription_moved', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('device_id')
    )
    op.create_index('ix_device_links_user_id', 'device_links', ['user_id'])

    # Processed provider events
    op.create_table(
        'webhook_events',
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('principal', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('provider_created_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload_json', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_id')
    )
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_principal', 'webhook_events', ['principal'])


def downgrade() -> None:
    """Drop the entitlement ledger tables."""
    op.drop_index('ix_webhook_events_principal', table_name='webhook_events')
    op.drop_index('ix_webhook_events_event_type', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_device_links_user_id', table_name='device_links')
    op.drop_table('device_links')

    op.drop_index('ix_subscription_states_external_customer_ref', table_name='subscription_states')
    op.drop_index('ix_subscription_states_external_subscription_ref', table_name='subscription_states')
    op.drop_index('ix_subscription_states_status', table_name='subscription_states')
    op.drop_index('ix_subscription_states_tier', table_name='subscription_states')
    op.drop_index('ix_subscription_states_principal', table_name='subscription_states')
    op.drop_table('subscription_states')

    op.drop_index('ix_credit_grants_source_reference', table_name='credit_grants')
    op.drop_index('ix_credit_grants_principal', table_name='credit_grants')
    op.drop_table('credit_grants')

    op.drop_index('ix_scan_records_correlation_id', table_name='scan_records')
    op.drop_index('ix_scan_records_occurred_at', table_name='scan_records')
    op.drop_index('ix_scan_records_action_kind', table_name='scan_records')
    op.drop_index('ix_scan_records_principal', table_name='scan_records')
    op.drop_table('scan_records')
