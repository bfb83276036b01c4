"""Initial migration - create ledger, vault, audit, reconciliation and idempotency tables

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create vault_tokens table
    op.create_table(
        'vault_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gateway_token_ref', sa.String(255), nullable=False, unique=True),
        sa.Column('owner_ref', sa.String(255), nullable=True),
        sa.Column('brand', sa.String(50), nullable=True),
        sa.Column('last4', sa.String(4), nullable=True),
        sa.Column('expiry', sa.String(7), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_vault_tokens_owner_ref', 'vault_tokens', ['owner_ref'])
    
    # Create reservations table (ledger slice)
    op.create_table(
        'reservations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(64), nullable=False),
        sa.Column('hotel_name', sa.String(255), nullable=True),
        sa.Column('confirmation_number', sa.String(64), nullable=False, unique=True),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(64), nullable=True),
        sa.Column('checkin_date', sa.String(10), nullable=True),
        sa.Column('checkout_date', sa.String(10), nullable=True),
        sa.Column('reservation_status', sa.String(50), nullable=False, server_default='confirmed'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('base_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('capture_limit', sa.Integer(), nullable=True),
        sa.Column('captured_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('charge_state', sa.String(30), nullable=False, server_default='NOT_PAID'),
        sa.Column('payment_label', sa.String(30), nullable=False, server_default='not paid'),
        sa.Column('charge_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_charge_via', sa.String(20), nullable=True),
        sa.Column('last_charge_at', sa.DateTime(), nullable=True),
        sa.Column('auth_order_ref', sa.String(255), nullable=True),
        sa.Column('auth_ref', sa.String(255), nullable=True),
        sa.Column('auth_status', sa.String(30), nullable=True),
        sa.Column('auth_amount', sa.Integer(), nullable=True),
        sa.Column('auth_expires_at', sa.DateTime(), nullable=True),
        sa.Column('auth_network_ref', sa.String(255), nullable=True),
        sa.Column('auth_capture_ref', sa.String(255), nullable=True),
        sa.Column('commission_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commission_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('commission_paid_at', sa.DateTime(), nullable=True),
        sa.Column('commission_status', sa.String(30), nullable=False, server_default='commission due'),
        sa.Column('transfer_eligible', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('money_transferred', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('money_transferred_at', sa.DateTime(), nullable=True),
        sa.Column('vault_token_id', sa.String(36), sa.ForeignKey('vault_tokens.id'), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        # Counters can never go negative
        sa.CheckConstraint('captured_total >= 0', name='ck_reservations_captured_nonneg'),
        sa.CheckConstraint('pending_total >= 0', name='ck_reservations_pending_nonneg'),
    )
    
    # Create indexes for reservations
    op.create_index('ix_reservations_hotel_id', 'reservations', ['hotel_id'])
    op.create_index('ix_reservations_hotel_commission', 'reservations', ['hotel_id', 'commission_paid'])
    op.create_index('ix_reservations_hotel_transfer', 'reservations', ['hotel_id', 'money_transferred'])
    
    # Create capture_records table
    op.create_table(
        'capture_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('reservations.id'), nullable=False),
        sa.Column('gateway_order_ref', sa.String(255), nullable=True),
        sa.Column('capture_ref', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('via', sa.String(20), nullable=False),
        sa.Column('invoice_ref', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('network_ref', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('capture_ref', name='uq_capture_records_capture_ref'),
    )
    op.create_index('ix_capture_records_reservation_id', 'capture_records', ['reservation_id'])
    
    # Create bounds_history table
    op.create_table(
        'bounds_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('reservations.id'), nullable=False),
        sa.Column('at', sa.DateTime(), nullable=False),
        sa.Column('old_limit', sa.Integer(), nullable=True),
        sa.Column('new_limit', sa.Integer(), nullable=False),
        sa.Column('actor', sa.String(255), nullable=True),
    )
    op.create_index('ix_bounds_history_reservation_id', 'bounds_history', ['reservation_id'])
    
    # Create audit_log table
    op.create_table(
        'audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36), nullable=True),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('batch_key', sa.String(64), nullable=True),
        sa.Column('at', sa.DateTime(), nullable=False),
        sa.Column('actor', sa.String(255), nullable=False, server_default='system'),
        sa.Column('field', sa.String(50), nullable=False),
        sa.Column('before_json', sa.Text(), nullable=True),
        sa.Column('after_json', sa.Text(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
    )
    op.create_index('ix_audit_log_reservation_id', 'audit_log', ['reservation_id'])
    op.create_index('ix_audit_log_hotel_id', 'audit_log', ['hotel_id'])
    op.create_index('ix_audit_log_batch_key', 'audit_log', ['batch_key'])
    op.create_index('ix_audit_log_at', 'audit_log', ['at'])
    
    # Create reconciliation_batches table
    op.create_table(
        'reconciliation_batches',
        sa.Column('key', sa.String(64), primary_key=True),
        sa.Column('hotel_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='in_progress'),
        sa.Column('strategy', sa.String(20), nullable=True),
        sa.Column('offline_items_json', sa.Text(), nullable=True),
        sa.Column('online_items_json', sa.Text(), nullable=True),
        sa.Column('offline_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('online_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('settled_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tolerance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('actor', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reconciliation_batches_hotel_id', 'reconciliation_batches', ['hotel_id'])
    
    # Create idempotency_keys table
    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('key', sa.String(255), nullable=False, unique=True),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('reservations.id'), nullable=True),
        sa.Column('response_data_json', sa.Text(), nullable=True),
        sa.Column('response_status_code', sa.Integer(), nullable=False, server_default='200'),
        sa.Column('endpoint', sa.String(255), nullable=False),
        sa.Column('request_hash', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    
    # Create indexes for idempotency_keys
    op.create_index('ix_idempotency_keys_key', 'idempotency_keys', ['key'], unique=True)
    op.create_index('ix_idempotency_keys_expires_at', 'idempotency_keys', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_idempotency_keys_expires_at', table_name='idempotency_keys')
    op.drop_index('ix_idempotency_keys_key', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')
    
    op.drop_index('ix_reconciliation_batches_hotel_id', table_name='reconciliation_batches')
    op.drop_table('reconciliation_batches')
    
    op.drop_index('ix_audit_log_at', table_name='audit_log')
    op.drop_index('ix_audit_log_batch_key', table_name='audit_log')
    op.drop_index('ix_audit_log_hotel_id', table_name='audit_log')
    op.drop_index('ix_audit_log_reservation_id', table_name='audit_log')
    op.drop_table('audit_log')
    
    op.drop_index('ix_bounds_history_reservation_id', table_name='bounds_history')
    op.drop_table('bounds_history')
    
    op.drop_index('ix_capture_records_reservation_id', table_name='capture_records')
    op.drop_table('capture_records')
    
    op.drop_index('ix_reservations_hotel_transfer', table_name='reservations')
    op.drop_index('ix_reservations_hotel_commission', table_name='reservations')
    op.drop_index('ix_reservations_hotel_id', table_name='reservations')
    op.drop_table('reservations')
    
    op.drop_index('ix_vault_tokens_owner_ref', table_name='vault_tokens')
    op.drop_table('vault_tokens')
