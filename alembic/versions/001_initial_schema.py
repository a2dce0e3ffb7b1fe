"""Initial schema: ledger, deposits, withdrawals, P2P escrow and trade chat.

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


def amount(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(36, 18), nullable=nullable)


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index('ix_users_external_id', 'users', ['external_id'])

    # Balances table
    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        amount('available', nullable=True),
        amount('locked', nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_balances_user_asset', 'balances', ['user_id', 'asset'], unique=True)

    # Audit log table
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('log_type', sa.String(20), nullable=False),
        amount('amount'),
        amount('available_before'),
        amount('available_after'),
        amount('locked_before'),
        amount('locked_after'),
        sa.Column('reference_type', sa.String(20), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('actor', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_reference', 'audit_logs', ['reference_type', 'reference_id'])

    # Deposit configuration
    op.create_table(
        'cryptocurrencies',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('network', sa.String(50), nullable=False),
        sa.Column('required_confirmations', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cryptocurrencies_symbol', 'cryptocurrencies', ['symbol'])

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('cryptocurrency_id', sa.Integer(), nullable=False),
        sa.Column('wallet_address', sa.String(255), nullable=False),
        sa.Column('network', sa.String(50), nullable=False),
        amount('min_amount', nullable=True),
        amount('max_amount', nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['cryptocurrency_id'], ['cryptocurrencies.id']),
        sa.PrimaryKeyConstraint('id')
    )

    # Deposits table
    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('payment_method_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('network', sa.String(50), nullable=False),
        amount('expected_amount'),
        amount('actual_amount', nullable=True),
        amount('credited_amount', nullable=True),
        sa.Column('proof_type', sa.String(10), nullable=False),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('proof_file', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('verification_error', sa.Text(), nullable=True),
        sa.Column('verified_by', sa.String(64), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])
    op.create_index('ix_deposits_tx_hash', 'deposits', ['tx_hash'])

    # Withdrawals table
    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        amount('amount'),
        amount('fee_amount'),
        amount('net_amount'),
        sa.Column('method', sa.String(50), nullable=False),
        sa.Column('network', sa.String(50), nullable=True),
        sa.Column('wallet_address', sa.String(255), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('processed_by', sa.String(64), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_withdrawals_user_id', 'withdrawals', ['user_id'])
    op.create_index('ix_withdrawals_tx_hash', 'withdrawals', ['tx_hash'])

    # P2P offers and trades
    op.create_table(
        'p2p_offers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('side', sa.String(10), nullable=False),
        sa.Column('coin', sa.String(20), nullable=False),
        amount('price'),
        amount('available_amount'),
        amount('min_limit'),
        amount('max_limit'),
        sa.Column('payment_methods', sa.Text(), nullable=False),
        sa.Column('terms', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_p2p_offers_user_id', 'p2p_offers', ['user_id'])
    op.create_index('ix_p2p_offers_coin', 'p2p_offers', ['coin'])

    op.create_table(
        'p2p_trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('coin', sa.String(20), nullable=False),
        amount('price'),
        amount('amount_usd'),
        amount('crypto_amount'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('disputed_by', sa.Integer(), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('resolution', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['offer_id'], ['p2p_offers.id']),
        sa.ForeignKeyConstraint(['buyer_id'], ['users.id']),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id']),
        sa.ForeignKeyConstraint(['disputed_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_p2p_trades_offer_id', 'p2p_trades', ['offer_id'])
    op.create_index('ix_p2p_trades_buyer_id', 'p2p_trades', ['buyer_id'])
    op.create_index('ix_p2p_trades_seller_id', 'p2p_trades', ['seller_id'])
    op.create_index('ix_p2p_trades_status', 'p2p_trades', ['status'])

    # Trade chat
    op.create_table(
        'trade_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('trade_id', sa.Integer(), nullable=False),
        sa.Column('sender_id', sa.Integer(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['trade_id'], ['p2p_trades.id']),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_trade_messages_order', 'trade_messages', ['trade_id', 'created_at', 'id'])


def downgrade() -> None:
    op.drop_table('trade_messages')
    op.drop_table('p2p_trades')
    op.drop_table('p2p_offers')
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('payment_methods')
    op.drop_table('cryptocurrencies')
    op.drop_table('audit_logs')
    op.drop_table('balances')
    op.drop_table('users')
