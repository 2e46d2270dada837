"""add_quickbooks_push_sync_tables

Revision ID: q1b2s3y4n5c6
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = 'q1b2s3y4n5c6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create quickbooks_connections table
    op.create_table(
        'quickbooks_connections',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('realm_id', sa.String(), nullable=True),  # QuickBooks company ID
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('default_bank_account_id', sa.String(), nullable=True),
        sa.Column('default_bank_account_name', sa.String(), nullable=True),
        sa.Column('default_cc_account_id', sa.String(), nullable=True),
        sa.Column('default_cc_account_name', sa.String(), nullable=True),
        sa.Column('auto_sync_expenses', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('auto_sync_invoices', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_quickbooks_connections_user_id', 'quickbooks_connections', ['user_id'], unique=True)

    # Create quickbooks_account_mappings table
    op.create_table(
        'quickbooks_account_mappings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('connection_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('account_name', sa.String(), nullable=False),
        sa.Column('account_type', sa.String(), nullable=False, server_default='Expense'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['connection_id'], ['quickbooks_connections.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'category', name='uq_qb_mapping_connection_category')
    )
    op.create_index('ix_quickbooks_account_mappings_connection_id', 'quickbooks_account_mappings', ['connection_id'])
    op.create_index('ix_quickbooks_account_mappings_user_id', 'quickbooks_account_mappings', ['user_id'])

    # Create quickbooks_sync_records table (idempotency ledger)
    op.create_table(
        'quickbooks_sync_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('connection_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('local_entity_id', sa.String(), nullable=False),
        sa.Column('external_entity_id', sa.String(), nullable=True),
        sa.Column('external_entity_type', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['connection_id'], ['quickbooks_connections.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'entity_type', 'local_entity_id', name='uq_qb_sync_record_entity')
    )
    op.create_index('ix_quickbooks_sync_records_connection_id', 'quickbooks_sync_records', ['connection_id'])
    op.create_index('ix_quickbooks_sync_records_user_id', 'quickbooks_sync_records', ['user_id'])
    op.create_index('ix_qb_sync_records_status', 'quickbooks_sync_records', ['connection_id', 'status'])

    # Create quickbooks_sync_history table
    op.create_table(
        'quickbooks_sync_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('connection_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('sync_type', sa.String(), nullable=False),
        sa.Column('entity_types', JSONB(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='started'),
        sa.Column('records_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['connection_id'], ['quickbooks_connections.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_quickbooks_sync_history_connection_id', 'quickbooks_sync_history', ['connection_id'])
    op.create_index('ix_quickbooks_sync_history_user_id', 'quickbooks_sync_history', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_quickbooks_sync_history_user_id', table_name='quickbooks_sync_history')
    op.drop_index('ix_quickbooks_sync_history_connection_id', table_name='quickbooks_sync_history')
    op.drop_table('quickbooks_sync_history')
    op.drop_index('ix_qb_sync_records_status', table_name='quickbooks_sync_records')
    op.drop_index('ix_quickbooks_sync_records_user_id', table_name='quickbooks_sync_records')
    op.drop_index('ix_quickbooks_sync_records_connection_id', table_name='quickbooks_sync_records')
    op.drop_table('quickbooks_sync_records')
    op.drop_index('ix_quickbooks_account_mappings_user_id', table_name='quickbooks_account_mappings')
    op.drop_index('ix_quickbooks_account_mappings_connection_id', table_name='quickbooks_account_mappings')
    op.drop_table('quickbooks_account_mappings')
    op.drop_index('ix_quickbooks_connections_user_id', table_name='quickbooks_connections')
    op.drop_table('quickbooks_connections')
