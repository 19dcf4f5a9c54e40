"""
SQLAlchemy database models for the TON DEX trader.
Token and Pool rows are owned by the pool monitor; Transaction, Fee and
TokenBalance rows by the execution and reconciliation path.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    """Persist enum values (lowercase) rather than member names."""
    return SQLEnum(enum_cls, values_callable=lambda members: [m.value for m in members])


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


# ===================
# Enums
# ===================

class Exchange(str, Enum):
    """Supported TON AMM exchanges."""
    DEDUST = "dedust"
    STONFI = "stonfi"


class Blockchain(str, Enum):
    """Chains a wallet can live on."""
    TON = "ton"


class TransactionType(str, Enum):
    """Trade direction."""
    BUY = "buy"
    SELL = "sell"


class TransactionStatus(str, Enum):
    """Settlement state. PENDING is the only non-terminal state."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# ===================
# Models
# ===================

class User(Base):
    """Account owning wallets and strategies."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    wallets: Mapped[list["Wallet"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    strategies: Mapped[list["Strategy"]] = relationship(back_populates="user", cascade="all, delete-orphan")


class Wallet(Base):
    """
    Custodial wallet reference. Only the address lives here; key material
    stays with the custody signer.
    """

    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    blockchain: Mapped[Blockchain] = mapped_column(_enum(Blockchain), default=Blockchain.TON)
    address: Mapped[str] = mapped_column(String(255), unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="wallets")

    __table_args__ = (
        Index("ix_wallets_user_chain", "user_id", "blockchain", unique=True),
    )


class Token(Base):
    """Jetton discovered in at least one TON-paired pool."""

    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    raw_address: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    friendly_address: Mapped[str] = mapped_column(String(100), unique=True, index=True)

    symbol: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    decimals: Mapped[int] = mapped_column(Integer, default=9)
    total_supply: Mapped[Decimal] = mapped_column(Numeric(78, 0))  # raw units
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # First on-chain transaction of the jetton master
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    discovered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    pools: Mapped[list["Pool"]] = relationship(
        back_populates="token",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Pool(Base):
    """Per-exchange snapshot of a TON/jetton pool, recomputed every cycle."""

    __tablename__ = "pools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(36), ForeignKey("tokens.id", ondelete="CASCADE"))
    exchange: Mapped[Exchange] = mapped_column(_enum(Exchange))
    address: Mapped[str] = mapped_column(String(100), index=True)

    native_reserve: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    asset_reserve: Mapped[Decimal] = mapped_column(Numeric(48, 18))
    price_in_native: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    price_in_fiat: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    total_liquidity_in_fiat: Mapped[Decimal] = mapped_column(Numeric(38, 2))
    market_cap_in_fiat: Mapped[Decimal] = mapped_column(Numeric(38, 2))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow
    )

    token: Mapped["Token"] = relationship(back_populates="pools")

    __table_args__ = (
        Index("ix_pools_token_exchange", "token_id", "exchange", unique=True),
    )


class Strategy(Base):
    """User-owned declarative trading strategy."""

    __tablename__ = "strategies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Validated StrategyLogic document
    logic: Mapped[dict[str, Any]] = mapped_column(JSON)
    max_bet_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="strategies")

    __table_args__ = (
        Index("ix_strategies_user_active", "user_id", "is_active"),
    )


class Transaction(Base):
    """One attempted swap. Status moves pending -> success | failed, once."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(36), ForeignKey("tokens.id", ondelete="CASCADE"))
    strategy_id: Mapped[str] = mapped_column(String(36), ForeignKey("strategies.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))

    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType))
    amount_token: Mapped[Decimal] = mapped_column(Numeric(48, 18))
    amount_native: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    price_in_fiat: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    exchange: Mapped[Exchange] = mapped_column(_enum(Exchange))

    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus),
        default=TransactionStatus.PENDING
    )
    chain_tx_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow
    )

    token: Mapped["Token"] = relationship()

    __table_args__ = (
        Index("ix_transactions_token_created", "token_id", "created_at"),
        Index("ix_transactions_strategy_created", "strategy_id", "created_at"),
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_chain_tx", "chain_tx_id"),
        Index("ix_transactions_status", "status"),
    )


class Fee(Base):
    """Platform fee charged on a transaction, at most one per transaction."""

    __tablename__ = "fees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        unique=True,
    )
    amount_native: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    # False when the on-chain transfer to the fee recipient did not go out
    collected: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )


class TokenBalance(Base):
    """Per-(user, token) holding, written only by the reconciler."""

    __tablename__ = "token_balances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    token_id: Mapped[str] = mapped_column(String(36), ForeignKey("tokens.id", ondelete="CASCADE"))
    balance: Mapped[Decimal] = mapped_column(Numeric(48, 18), default=Decimal("0"))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_token_balances_user_token", "user_id", "token_id", unique=True),
    )
