"""Create billing tables

Revision ID: 001
Revises:
Create Date: 2026-10-17 12:00:00.000000

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


def upgrade() -> None:
    # Tables may already exist when init_db() ran first (Base.metadata.create_all)
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    # users is owned by the account service; create it only on a bare database
    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('admin_permissions', sa.JSON(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'raw_events' not in existing_tables:
        op.create_table(
            'raw_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('provider_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('raw_event_type', sa.String(length=100), nullable=True),
            sa.Column('transaction_id', sa.String(length=255), nullable=True),
            sa.Column('identity_source', sa.String(length=20), nullable=False, server_default='provider'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('headers', sa.JSON(), nullable=True),
            sa.Column('signature', sa.String(length=255), nullable=True),
            sa.Column('processing_status', sa.String(length=20), nullable=False, server_default='PENDING'),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_raw_events_id', 'raw_events', ['id'])
        op.create_index('ix_raw_events_provider_event_id', 'raw_events', ['provider_event_id'], unique=True)
        op.create_index('ix_raw_events_event_type', 'raw_events', ['event_type'])
        op.create_index('ix_raw_events_transaction_id', 'raw_events', ['transaction_id'])
        op.create_index('ix_raw_events_processing_status', 'raw_events', ['processing_status'])
        op.create_index('ix_raw_events_received_at', 'raw_events', ['received_at'])
        op.create_index('ix_raw_events_status_received', 'raw_events', ['processing_status', 'received_at'])

    if 'payments' not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('transaction_id', sa.String(length=255), nullable=True),
            sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='BRL'),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('provider', sa.String(length=50), nullable=False),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_payments_id', 'payments', ['id'])
        op.create_index('ix_payments_user_id', 'payments', ['user_id'])
        op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=True)
        op.create_index('ix_payments_created_at', 'payments', ['created_at'])
        op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.String(length=100), nullable=False),
            sa.Column('status', sa.String(length=30), nullable=False, server_default='UNKNOWN'),
            sa.Column('external_customer_id', sa.String(length=255), nullable=True),
            sa.Column('last_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
        op.create_index('ix_subscriptions_external_customer_id', 'subscriptions', ['external_customer_id'])

    if 'product_mappings' not in existing_tables:
        op.create_table(
            'product_mappings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('provider_product_id', sa.String(length=255), nullable=False),
            sa.Column('product_name', sa.String(length=255), nullable=True),
            sa.Column('kind', sa.String(length=30), nullable=False),
            sa.Column('plan_id', sa.String(length=100), nullable=True),
            sa.Column('bot_type', sa.String(length=50), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_mappings_id', 'product_mappings', ['id'])
        op.create_index('ix_product_mappings_provider_product_id', 'product_mappings', ['provider_product_id'], unique=True)

    if 'user_entitlements' not in existing_tables:
        op.create_table(
            'user_entitlements',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('entitlement_type', sa.String(length=30), nullable=False),
            sa.Column('source', sa.String(length=30), nullable=False),
            sa.Column('bot_type', sa.String(length=50), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
            sa.Column('source_event_id', sa.String(length=255), nullable=False),
            sa.Column('source_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_user_entitlements_id', 'user_entitlements', ['id'])
        op.create_index('ix_user_entitlements_user_id', 'user_entitlements', ['user_id'])
        op.create_index('ix_user_entitlements_status', 'user_entitlements', ['status'])
        op.create_index('ix_user_entitlements_source_event_id', 'user_entitlements', ['source_event_id'])
        op.create_index('ix_user_entitlements_source_transaction_id', 'user_entitlements', ['source_transaction_id'])
        op.create_index('ix_user_entitlements_user_status', 'user_entitlements', ['user_id', 'status'])

    if 'audit_logs' not in existing_tables:
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('actor', sa.String(length=255), nullable=True),
            sa.Column('action', sa.String(length=60), nullable=False),
            sa.Column('entity_type', sa.String(length=50), nullable=False),
            sa.Column('entity_id', sa.String(length=255), nullable=False),
            sa.Column('before', sa.JSON(), nullable=True),
            sa.Column('after', sa.JSON(), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
        op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
        op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
        op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])


def downgrade() -> None:
    # users belongs to the account service and is left in place
    for table in ('audit_logs', 'user_entitlements', 'product_mappings', 'subscriptions', 'payments', 'raw_events'):
        op.drop_table(table)
