"""
Pytest configuration and fixtures.
"""

import os

# Settings are read at import time; provide the required values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FEE_RECIPIENT_WALLET", "EQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAM9c")
os.environ.setdefault("TOKEN_SYMBOL_BLACKLIST", "scam,rug")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from tenacity import wait_none

from tontrader.db import database
from tontrader.db.models import Exchange, Pool, Token
from tontrader.exchanges.base import BaseExchange
from tontrader.services.tonapi import TonApiClient

TOKEN_RAW = "0:" + "ab" * 32
TOKEN_FRIENDLY = "EQCrq6urq6urq6urq6urq6urq6urq6urq6urq6urq6urqxyz"
WALLET_ADDRESS = "UQBvW8Z5huBkMJYdnfAEM5JqTNkuWX3diqYENkWsIL0XggGG"


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Retries back off instantly in tests."""
    monkeypatch.setattr(TonApiClient._get.retry, "wait", wait_none())
    monkeypatch.setattr(BaseExchange._request.retry, "wait", wait_none())


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database per test."""
    await database.init_db(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_tables()
    yield
    await database.close_db()


@pytest.fixture
async def user(db):
    """A user with a registered TON wallet."""
    user = await database.create_user(username="trader")
    await database.create_wallet(user.id, WALLET_ADDRESS)
    return user


@pytest.fixture
async def token(db):
    """A 9-decimal token with one DeDust pool priced at 1.25 USD."""
    token = await database.create_token(
        raw_address=TOKEN_RAW,
        friendly_address=TOKEN_FRIENDLY,
        symbol="GEM",
        name="Gem",
        decimals=9,
        total_supply=Decimal("1000000000000000000"),
        created_at=datetime.now(timezone.utc) - timedelta(days=3),
    )
    await database.upsert_pool(
        token.id,
        Exchange.DEDUST,
        "EQDedustPool",
        native_reserve=Decimal("1000"),
        asset_reserve=Decimal("800"),
        price_in_native=Decimal("1.25"),
        price_in_fiat=Decimal("1.25"),
        total_liquidity_in_fiat=Decimal("10000"),
        market_cap_in_fiat=Decimal("1250000000"),
    )
    return await database.get_token_by_id(token.id)


def make_token(
    symbol: str = "GEM",
    market_cap: str = "60000",
    liquidity: str = "10000",
    price: str = "1.25",
    age_days: float = 2.5,
    with_pool: bool = True,
    now: datetime = None,
) -> Token:
    """Transient Token with an optional single pool, for pure evaluation."""
    now = now or datetime.now(timezone.utc)
    token = Token(
        id="token-1",
        raw_address=TOKEN_RAW,
        friendly_address=TOKEN_FRIENDLY,
        symbol=symbol,
        name=symbol,
        decimals=9,
        total_supply=Decimal("1000000000000000000"),
        created_at=now - timedelta(days=age_days),
    )
    token.pools = []
    if with_pool:
        token.pools.append(Pool(
            id="pool-1",
            token_id=token.id,
            exchange=Exchange.DEDUST,
            address="EQDedustPool",
            native_reserve=Decimal("1000"),
            asset_reserve=Decimal("800"),
            price_in_native=Decimal(price),
            price_in_fiat=Decimal(price),
            total_liquidity_in_fiat=Decimal(liquidity),
            market_cap_in_fiat=Decimal(market_cap),
        ))
    return token
