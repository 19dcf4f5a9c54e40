"""
Tests for the trading cycle.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tontrader.db import database
from tontrader.db.models import Exchange, TransactionType
from tontrader.services.tonapi import Trade
from tontrader.services.trading_engine import TradingEngine, TradingJob
from tontrader.strategy.evaluator import BuyDecision, SellDecision

BUY_GEM = {
    "buy": {
        "conditions": [{"type": "tokenName", "operator": "contains", "value": "gem"}],
        "action": {"type": "fixedAmount", "amount": 2},
    },
    "sell": [],
}


@pytest.fixture
def executor():
    fake = AsyncMock()
    fake.execute.return_value = True
    return fake


@pytest.fixture
def tonapi():
    client = AsyncMock()
    client.get_recent_trades.return_value = []
    return client


@pytest.fixture
def engine(executor, tonapi):
    return TradingEngine(executor, tonapi, concurrency=2, cycle_pause=0)


class TestTradingEngine:
    """Test job evaluation and cycle draining."""

    async def test_cycle_evaluates_every_pair(self, engine, executor, user, token):
        strategy = await database.create_strategy(user.id, "gems", BUY_GEM, Decimal("10"))
        await database.create_strategy(user.id, "idle", BUY_GEM, Decimal("10"), is_active=False)

        jobs = await engine.run_cycle()

        assert jobs == 1
        executor.execute.assert_awaited_once()
        executed_token, executed_strategy, decision = executor.execute.await_args.args
        assert executed_token.id == token.id
        assert executed_strategy.id == strategy.id
        assert decision == BuyDecision(Decimal("2"))

    async def test_pending_transaction_blocks_pair(self, engine, executor, user, token):
        strategy = await database.create_strategy(user.id, "gems", BUY_GEM, Decimal("10"))
        await database.create_transaction(
            token_id=token.id,
            strategy_id=strategy.id,
            user_id=user.id,
            type=TransactionType.BUY,
            amount_token=Decimal("0"),
            amount_native=Decimal("1"),
            price_in_fiat=Decimal("1.25"),
            exchange=Exchange.DEDUST,
        )

        assert not await engine.process_job(TradingJob(token.id, strategy.id, user.id))
        executor.execute.assert_not_awaited()

    async def test_holding_triggers_sell(self, engine, executor, user, token):
        logic = {
            "sell": [{
                "condition": {"type": "price", "operator": "increasedBy", "value": 20},
                "action": {"type": "percentageOfHoldings", "amount": 50},
            }],
        }
        strategy = await database.create_strategy(user.id, "take-profit", logic, Decimal("10"))
        entry = await database.create_strategy(user.id, "entry", BUY_GEM, Decimal("10"), is_active=False)
        await database.apply_balance_delta(user.id, token.id, Decimal("100"))
        await database.create_transaction(
            token_id=token.id,
            strategy_id=entry.id,
            user_id=user.id,
            type=TransactionType.BUY,
            amount_token=Decimal("0"),
            amount_native=Decimal("1"),
            price_in_fiat=Decimal("1"),
            exchange=Exchange.DEDUST,
        )

        assert await engine.process_job(TradingJob(token.id, strategy.id, user.id))

        decision = executor.execute.await_args.args[2]
        assert decision == SellDecision(amount=Decimal("50"), rule_index=0)

    async def test_invalid_logic_is_skipped(self, engine, executor, user, token):
        strategy = await database.create_strategy(
            user.id, "broken", {"buy": {"conditions": [{"type": "volume"}], "action": {}}}, Decimal("10")
        )

        assert not await engine.process_job(TradingJob(token.id, strategy.id, user.id))
        executor.execute.assert_not_awaited()

    async def test_trade_activity_fetched_from_best_pool(self, engine, executor, tonapi, user, token):
        logic = {
            "buy": {
                "conditions": [{"type": "minimumTrades", "count": 2}],
                "action": {"type": "fixedAmount", "amount": 1},
            },
        }
        strategy = await database.create_strategy(user.id, "active", logic, Decimal("10"))
        tonapi.get_recent_trades.return_value = [
            Trade(type="buy", token_amount=Decimal("1"), native_amount=Decimal("1")),
            Trade(type="sell", token_amount=Decimal("1"), native_amount=Decimal("1")),
        ]

        assert await engine.process_job(TradingJob(token.id, strategy.id, user.id))
        tonapi.get_recent_trades.assert_awaited_once_with("EQDedustPool", 9)

    async def test_failing_job_does_not_stall_cycle(self, engine, executor, user, token):
        await database.create_strategy(user.id, "gems", BUY_GEM, Decimal("10"))
        await database.create_strategy(user.id, "gems-2", BUY_GEM, Decimal("10"))
        executor.execute.side_effect = [RuntimeError("boom"), True]

        assert await engine.run_cycle() == 2
        assert executor.execute.await_count == 2
