"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    # Types are created explicitly below
    return postgresql.ENUM(*values, name=name, create_type=False)


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE exchange AS ENUM ('dedust', 'stonfi')")
    op.execute("CREATE TYPE blockchain AS ENUM ('ton')")
    op.execute("CREATE TYPE transactiontype AS ENUM ('buy', 'sell')")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('pending', 'success', 'failed')")

    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Wallets table (addresses only, keys live with the custody signer)
    op.create_table(
        'wallets',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('blockchain', _enum('blockchain', 'ton'), nullable=False, server_default='ton'),
        sa.Column('address', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_wallets_address', 'wallets', ['address'], unique=True)
    op.create_index('ix_wallets_user_chain', 'wallets', ['user_id', 'blockchain'], unique=True)

    # Tokens table
    op.create_table(
        'tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('raw_address', sa.String(100), nullable=False),
        sa.Column('friendly_address', sa.String(100), nullable=False),
        sa.Column('symbol', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('decimals', sa.Integer(), nullable=False, server_default='9'),
        sa.Column('total_supply', sa.Numeric(78, 0), nullable=False),
        sa.Column('image', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('discovered_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_tokens_raw_address', 'tokens', ['raw_address'], unique=True)
    op.create_index('ix_tokens_friendly_address', 'tokens', ['friendly_address'], unique=True)

    # Pools table (one snapshot per token and exchange)
    op.create_table(
        'pools',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token_id', sa.String(36), sa.ForeignKey('tokens.id', ondelete='CASCADE'), nullable=False),
        sa.Column('exchange', _enum('exchange', 'dedust', 'stonfi'), nullable=False),
        sa.Column('address', sa.String(100), nullable=False),
        sa.Column('native_reserve', sa.Numeric(38, 9), nullable=False),
        sa.Column('asset_reserve', sa.Numeric(48, 18), nullable=False),
        sa.Column('price_in_native', sa.Numeric(38, 9), nullable=False),
        sa.Column('price_in_fiat', sa.Numeric(38, 9), nullable=False),
        sa.Column('total_liquidity_in_fiat', sa.Numeric(38, 2), nullable=False),
        sa.Column('market_cap_in_fiat', sa.Numeric(38, 2), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_pools_address', 'pools', ['address'])
    op.create_index('ix_pools_token_exchange', 'pools', ['token_id', 'exchange'], unique=True)

    # Strategies table
    op.create_table(
        'strategies',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('logic', sa.JSON(), nullable=False),
        sa.Column('max_bet_amount', sa.Numeric(38, 9), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_strategies_user_active', 'strategies', ['user_id', 'is_active'])

    # Transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token_id', sa.String(36), sa.ForeignKey('tokens.id', ondelete='CASCADE'), nullable=False),
        sa.Column('strategy_id', sa.String(36), sa.ForeignKey('strategies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', _enum('transactiontype', 'buy', 'sell'), nullable=False),
        sa.Column('amount_token', sa.Numeric(48, 18), nullable=False),
        sa.Column('amount_native', sa.Numeric(38, 9), nullable=False),
        sa.Column('price_in_fiat', sa.Numeric(38, 9), nullable=False),
        sa.Column('exchange', _enum('exchange', 'dedust', 'stonfi'), nullable=False),
        sa.Column('status', _enum('transactionstatus', 'pending', 'success', 'failed'),
                  nullable=False, server_default='pending'),
        sa.Column('chain_tx_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_transactions_token_created', 'transactions', ['token_id', 'created_at'])
    op.create_index('ix_transactions_strategy_created', 'transactions', ['strategy_id', 'created_at'])
    op.create_index('ix_transactions_user_created', 'transactions', ['user_id', 'created_at'])
    op.create_index('ix_transactions_chain_tx', 'transactions', ['chain_tx_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])

    # Fees table (at most one per transaction)
    op.create_table(
        'fees',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('amount_native', sa.Numeric(38, 9), nullable=False),
        sa.Column('collected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Token balances table
    op.create_table(
        'token_balances',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_id', sa.String(36), sa.ForeignKey('tokens.id', ondelete='CASCADE'), nullable=False),
        sa.Column('balance', sa.Numeric(48, 18), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_token_balances_user_token', 'token_balances', ['user_id', 'token_id'], unique=True)


def downgrade() -> None:
    # Drop tables
    op.drop_table('token_balances')
    op.drop_table('fees')
    op.drop_table('transactions')
    op.drop_table('strategies')
    op.drop_table('pools')
    op.drop_table('tokens')
    op.drop_table('wallets')
    op.drop_table('users')

    # Drop enum types
    op.execute("DROP TYPE transactionstatus")
    op.execute("DROP TYPE transactiontype")
    op.execute("DROP TYPE blockchain")
    op.execute("DROP TYPE exchange")
