"""
Database connection, session management and persistence operations.
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tontrader.db.models import (
    Base,
    Blockchain,
    Exchange,
    Fee,
    Pool,
    Strategy,
    Token,
    TokenBalance,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    Wallet,
    utcnow,
)
from tontrader.utils.logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


def _to_decimal(value: Any) -> Decimal:
    """Aggregates come back as float on SQLite."""
    return Decimal(str(value)) if value is not None else ZERO


# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def normalize_database_url(database_url: str) -> str:
    """Convert postgres:// URLs to the asyncpg driver."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


async def init_db(database_url: str) -> None:
    """Initialize database connection."""
    global _engine, _session_factory

    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        # aiosqlite uses a static pool, pool sizing does not apply
        _engine = create_async_engine(database_url, echo=False)
    else:
        _engine = create_async_engine(
            database_url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info("Database connection initialized", dialect=_engine.dialect.name)


async def create_tables() -> None:
    """Create all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session, committed on clean exit."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _insert(model: type[Base]):
    """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
    if _engine is not None and _engine.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


# ===================
# User & Wallet Operations
# ===================

async def create_user(username: Optional[str] = None, email: Optional[str] = None) -> User:
    """Create a user record."""
    async with get_session() as session:
        user = User(id=generate_id(), username=username, email=email)
        session.add(user)
        await session.flush()

        logger.info("Created user", user_id=user.id)
        return user


async def create_wallet(
    user_id: str,
    address: str,
    blockchain: Blockchain = Blockchain.TON,
) -> Wallet:
    """Register a custodial wallet address for a user."""
    async with get_session() as session:
        wallet = Wallet(
            id=generate_id(),
            user_id=user_id,
            blockchain=blockchain,
            address=address,
        )
        session.add(wallet)
        await session.flush()

        logger.info("Created wallet", user_id=user_id, blockchain=blockchain.value)
        return wallet


async def get_user_wallets(user_id: str) -> list[Wallet]:
    """Get all wallets for a user."""
    async with get_session() as session:
        result = await session.execute(
            select(Wallet).where(Wallet.user_id == user_id)
        )
        return list(result.scalars().all())


# ===================
# Token & Pool Operations
# ===================

async def create_token(
    raw_address: str,
    friendly_address: str,
    symbol: str,
    name: str,
    decimals: int,
    total_supply: Decimal,
    created_at: datetime,
    image: Optional[str] = None,
    description: Optional[str] = None,
) -> Token:
    """Persist a newly discovered token."""
    async with get_session() as session:
        token = Token(
            id=generate_id(),
            raw_address=raw_address,
            friendly_address=friendly_address,
            symbol=symbol,
            name=name,
            decimals=decimals,
            total_supply=total_supply,
            created_at=created_at,
            image=image,
            description=description,
        )
        session.add(token)
        await session.flush()

        logger.info("Created token", token_id=token.id, symbol=symbol, address=friendly_address)
        return token


async def get_token_by_id(token_id: str) -> Optional[Token]:
    """Get a token with its pools."""
    async with get_session() as session:
        result = await session.execute(
            select(Token).where(Token.id == token_id)
        )
        return result.scalar_one_or_none()


async def get_token_by_raw_address(raw_address: str) -> Optional[Token]:
    """Get a token by its jetton master raw address."""
    async with get_session() as session:
        result = await session.execute(
            select(Token).where(Token.raw_address == raw_address)
        )
        return result.scalar_one_or_none()


async def get_all_tokens() -> list[Token]:
    """Get every known token with its pools."""
    async with get_session() as session:
        result = await session.execute(select(Token))
        return list(result.scalars().all())


async def get_known_token_addresses() -> set[str]:
    """Friendly and raw addresses of every known token."""
    async with get_session() as session:
        result = await session.execute(
            select(Token.friendly_address, Token.raw_address)
        )
        known: set[str] = set()
        for friendly, raw in result.all():
            known.add(friendly)
            known.add(raw)
        return known


async def upsert_pool(
    token_id: str,
    exchange: Exchange,
    address: str,
    **values: Any,
) -> None:
    """Insert or wholesale-replace the (token, exchange) pool snapshot."""
    async with get_session() as session:
        now = utcnow()
        stmt = _insert(Pool).values(
            id=generate_id(),
            token_id=token_id,
            exchange=exchange,
            address=address,
            updated_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_id", "exchange"],
            set_={"address": address, "updated_at": now, **values},
        )
        await session.execute(stmt)


# ===================
# Strategy Operations
# ===================

@dataclass
class StrategyPnl:
    """Realised profit and loss of a strategy."""
    pnl_native: Decimal
    pnl_fiat: Decimal


async def create_strategy(
    user_id: str,
    name: str,
    logic: dict[str, Any],
    max_bet_amount: Decimal,
    is_active: bool = True,
) -> Strategy:
    """Create a strategy. ``logic`` must already be validated."""
    async with get_session() as session:
        strategy = Strategy(
            id=generate_id(),
            user_id=user_id,
            name=name,
            logic=logic,
            max_bet_amount=max_bet_amount,
            is_active=is_active,
        )
        session.add(strategy)
        await session.flush()

        logger.info("Created strategy", user_id=user_id, strategy_id=strategy.id)
        return strategy


async def edit_strategy(
    strategy_id: str,
    user_id: str,
    name: Optional[str] = None,
    is_active: Optional[bool] = None,
    max_bet_amount: Optional[Decimal] = None,
    logic: Optional[dict[str, Any]] = None,
) -> Optional[Strategy]:
    """Update fields of a strategy owned by ``user_id``. None when not found."""
    async with get_session() as session:
        result = await session.execute(
            select(Strategy)
            .where(Strategy.id == strategy_id)
            .where(Strategy.user_id == user_id)
        )
        strategy = result.scalar_one_or_none()
        if not strategy:
            return None

        if name is not None:
            strategy.name = name
        if is_active is not None:
            strategy.is_active = is_active
        if max_bet_amount is not None:
            strategy.max_bet_amount = max_bet_amount
        if logic is not None:
            strategy.logic = logic

        await session.flush()
        return strategy


async def get_strategy_by_id(strategy_id: str) -> Optional[Strategy]:
    async with get_session() as session:
        result = await session.execute(
            select(Strategy).where(Strategy.id == strategy_id)
        )
        return result.scalar_one_or_none()


async def get_strategies_by_user_id(user_id: str) -> list[Strategy]:
    async with get_session() as session:
        result = await session.execute(
            select(Strategy)
            .where(Strategy.user_id == user_id)
            .order_by(Strategy.created_at.desc())
        )
        return list(result.scalars().all())


async def get_all_active_strategies() -> list[Strategy]:
    async with get_session() as session:
        result = await session.execute(
            select(Strategy).where(Strategy.is_active.is_(True))
        )
        return list(result.scalars().all())


async def get_strategy_with_pnl(strategy_id: str) -> Optional[tuple[Strategy, StrategyPnl]]:
    """Strategy plus its realised PNL computed from settled transactions."""
    strategy = await get_strategy_by_id(strategy_id)
    if not strategy:
        return None
    return strategy, await calculate_pnl(strategy_id)


# ===================
# Transaction Operations
# ===================

def _signed(value, sign_column=Transaction.type):
    """+value for sells, -value for buys."""
    return case(
        (sign_column == TransactionType.SELL, value),
        else_=-value,
    )


async def create_transaction(
    token_id: str,
    strategy_id: str,
    user_id: str,
    type: TransactionType,
    amount_token: Decimal,
    amount_native: Decimal,
    price_in_fiat: Decimal,
    exchange: Exchange,
    created_at: Optional[datetime] = None,
) -> Transaction:
    """Record a submitted swap as pending."""
    async with get_session() as session:
        transaction = Transaction(
            id=generate_id(),
            token_id=token_id,
            strategy_id=strategy_id,
            user_id=user_id,
            type=type,
            amount_token=amount_token,
            amount_native=amount_native,
            price_in_fiat=price_in_fiat,
            exchange=exchange,
            status=TransactionStatus.PENDING,
            created_at=created_at or utcnow(),
        )
        session.add(transaction)
        await session.flush()

        logger.info(
            "Created transaction",
            transaction_id=transaction.id,
            type=type.value,
            exchange=exchange.value,
        )
        return transaction


async def get_transaction_by_id(transaction_id: str) -> Optional[Transaction]:
    async with get_session() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()


async def get_pending_transactions() -> list[Transaction]:
    """All pending transactions with their token loaded."""
    async with get_session() as session:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.PENDING)
            .options(selectinload(Transaction.token))
            .order_by(Transaction.created_at)
        )
        return list(result.scalars().all())


async def get_claimed_chain_tx_ids(chain_tx_ids: list[str]) -> set[str]:
    """Which of the given on-chain event ids already settled a transaction."""
    if not chain_tx_ids:
        return set()
    async with get_session() as session:
        result = await session.execute(
            select(Transaction.chain_tx_id)
            .where(Transaction.chain_tx_id.in_(chain_tx_ids))
        )
        return set(result.scalars().all())


async def has_pending_transaction(user_id: str, token_id: str, strategy_id: str) -> bool:
    """Whether the (user, token, strategy) triple has an unsettled swap."""
    async with get_session() as session:
        result = await session.execute(
            select(func.count(Transaction.id))
            .where(Transaction.user_id == user_id)
            .where(Transaction.token_id == token_id)
            .where(Transaction.strategy_id == strategy_id)
            .where(Transaction.status == TransactionStatus.PENDING)
        )
        return result.scalar_one() > 0


async def get_latest_transaction_price(token_id: str) -> Optional[Decimal]:
    """Fiat price recorded on the most recent transaction for a token."""
    async with get_session() as session:
        result = await session.execute(
            select(Transaction.price_in_fiat)
            .where(Transaction.token_id == token_id)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        price = result.scalar_one_or_none()
        return _to_decimal(price) if price is not None else None


async def get_net_investment_for_strategy(strategy_id: str) -> Decimal:
    """Settled buys minus settled sells, in TON."""
    async with get_session() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(-_signed(Transaction.amount_native)), 0))
            .where(Transaction.strategy_id == strategy_id)
            .where(Transaction.status == TransactionStatus.SUCCESS)
        )
        return _to_decimal(result.scalar_one())


async def get_pending_investment_for_strategy(strategy_id: str) -> Decimal:
    """TON committed by buys that have not settled yet."""
    async with get_session() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(Transaction.amount_native), 0))
            .where(Transaction.strategy_id == strategy_id)
            .where(Transaction.type == TransactionType.BUY)
            .where(Transaction.status == TransactionStatus.PENDING)
        )
        return _to_decimal(result.scalar_one())


async def calculate_pnl(strategy_id: str) -> StrategyPnl:
    """Sells minus buys over settled transactions, in TON and in fiat."""
    async with get_session() as session:
        result = await session.execute(
            select(
                func.coalesce(func.sum(_signed(Transaction.amount_native)), 0),
                func.coalesce(
                    func.sum(_signed(Transaction.amount_token * Transaction.price_in_fiat)), 0
                ),
            )
            .where(Transaction.strategy_id == strategy_id)
            .where(Transaction.status == TransactionStatus.SUCCESS)
        )
        pnl_native, pnl_fiat = result.one()
        return StrategyPnl(
            pnl_native=_to_decimal(pnl_native),
            pnl_fiat=_to_decimal(pnl_fiat),
        )


async def _upsert_balance(
    session: AsyncSession,
    user_id: str,
    token_id: str,
    delta: Decimal,
) -> None:
    stmt = _insert(TokenBalance).values(
        id=generate_id(),
        user_id=user_id,
        token_id=token_id,
        balance=delta,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "token_id"],
        set_={
            "balance": TokenBalance.balance + stmt.excluded.balance,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)


async def transition_transaction(
    transaction_id: str,
    status: TransactionStatus,
    chain_tx_id: Optional[str] = None,
    balance_delta: Optional[Decimal] = None,
    **values: Any,
) -> bool:
    """
    Move a pending transaction to a terminal status.

    The update only matches rows still pending, so a transaction settles at
    most once. When it does and ``balance_delta`` is given, the holder's
    token balance is adjusted in the same database transaction.

    Returns:
        True if this call performed the transition
    """
    if status == TransactionStatus.PENDING:
        raise ValueError("Cannot transition a transaction to pending")

    async with get_session() as session:
        result = await session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == TransactionStatus.PENDING)
            .values(status=status, chain_tx_id=chain_tx_id, updated_at=utcnow(), **values)
            .returning(Transaction.user_id, Transaction.token_id)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return False

        if balance_delta is not None and balance_delta != ZERO:
            await _upsert_balance(session, row.user_id, row.token_id, balance_delta)

        logger.info(
            "Transaction settled",
            transaction_id=transaction_id,
            status=status.value,
            chain_tx_id=chain_tx_id,
        )
        return True


# ===================
# Fee & Balance Operations
# ===================

async def create_fee(
    user_id: str,
    transaction_id: str,
    amount_native: Decimal,
    collected: bool,
) -> Fee:
    """Record the platform fee for a transaction (unique per transaction)."""
    async with get_session() as session:
        fee = Fee(
            id=generate_id(),
            user_id=user_id,
            transaction_id=transaction_id,
            amount_native=amount_native,
            collected=collected,
        )
        session.add(fee)
        await session.flush()
        return fee


async def get_fee_for_transaction(transaction_id: str) -> Optional[Fee]:
    async with get_session() as session:
        result = await session.execute(
            select(Fee).where(Fee.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()


async def get_token_balance(user_id: str, token_id: str) -> Decimal:
    """Current holding, zero when the user never held the token."""
    async with get_session() as session:
        result = await session.execute(
            select(TokenBalance.balance)
            .where(TokenBalance.user_id == user_id)
            .where(TokenBalance.token_id == token_id)
        )
        balance = result.scalar_one_or_none()
        return _to_decimal(balance)


async def apply_balance_delta(user_id: str, token_id: str, delta: Decimal) -> None:
    """Atomically add ``delta`` to a holding, creating the row if needed."""
    async with get_session() as session:
        await _upsert_balance(session, user_id, token_id, delta)
