"""
Pure strategy evaluation.

``evaluate_strategy`` decides what one strategy wants to do with one token
given the user's current holding. It performs no I/O: everything it needs
(latest trade price, recent pool trades, the clock) arrives through
``EvaluationContext`` so the trading engine controls side effects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence, Union

from tontrader.db.models import Pool, Token
from tontrader.services.tonapi import Trade
from tontrader.strategy.logic import (
    AgeCondition,
    BlacklistCondition,
    BuyCondition,
    BuyRatioCondition,
    LargeTradeRatioCondition,
    LiquidityCondition,
    MarketCapCondition,
    MinimumTradesCondition,
    PriceChangeCondition,
    PriceCondition,
    SellRatioCondition,
    StrategyLogic,
    TokenNameCondition,
    ThresholdCondition,
)
from tontrader.utils.logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class BuyDecision:
    """Spend ``amount`` TON on the token."""
    amount: Decimal


@dataclass(frozen=True)
class SellDecision:
    """Sell ``amount`` token units, triggered by sell rule ``rule_index``."""
    amount: Decimal
    rule_index: int


Decision = Union[NoAction, BuyDecision, SellDecision]


@dataclass
class EvaluationContext:
    """Inputs gathered by the caller before evaluation."""
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_transaction_price: Optional[Decimal] = None
    recent_trades: list[Trade] = field(default_factory=list)
    symbol_blacklist: list[str] = field(default_factory=list)


def best_pool(pools: Sequence[Pool]) -> Optional[Pool]:
    """The pool with the highest fiat liquidity, first one wins ties."""
    best: Optional[Pool] = None
    for pool in pools:
        if best is None or (pool.total_liquidity_in_fiat or ZERO) > (best.total_liquidity_in_fiat or ZERO):
            best = pool
    return best


def evaluate_strategy(
    token: Token,
    logic: StrategyLogic,
    balance: Decimal,
    context: EvaluationContext,
) -> Decision:
    """
    Decide between buying, selling and doing nothing.

    While holding, sell rules are tried in order and the first match wins.
    While flat, the buy rule fires only if every condition holds. A strategy
    never buys while holding and never sells while flat.
    """
    if balance > 0:
        for index, rule in enumerate(logic.sell):
            if not _price_change_matches(token, rule.condition, context):
                continue

            amount = balance * rule.action.amount / HUNDRED
            if amount <= 0:
                logger.warning(
                    "Sell amount anomaly, skipping",
                    token_id=token.id,
                    balance=str(balance),
                    rule_index=index,
                )
                return NoAction()
            return SellDecision(amount=amount, rule_index=index)
        return NoAction()

    if balance == 0 and logic.buy is not None:
        if all(_buy_condition_matches(token, condition, context) for condition in logic.buy.conditions):
            return BuyDecision(amount=logic.buy.action.amount)

    return NoAction()


# ===================
# Buy conditions
# ===================

def _buy_condition_matches(token: Token, condition: BuyCondition, context: EvaluationContext) -> bool:
    if isinstance(condition, TokenNameCondition):
        return condition.value.lower() in token.symbol.lower()
    if isinstance(condition, MarketCapCondition):
        return _compare_best_pool(token, condition, "market_cap_in_fiat")
    if isinstance(condition, LiquidityCondition):
        return _compare_best_pool(token, condition, "total_liquidity_in_fiat")
    if isinstance(condition, PriceCondition):
        return _compare_best_pool(token, condition, "price_in_fiat")
    if isinstance(condition, AgeCondition):
        return _age_matches(token, condition, context.now)
    if isinstance(condition, BlacklistCondition):
        return _blacklist_passes(token.symbol, condition, context.symbol_blacklist)
    if isinstance(condition, MinimumTradesCondition):
        return len(context.recent_trades) >= condition.count
    if isinstance(condition, (BuyRatioCondition, SellRatioCondition)):
        return _side_ratio_matches(condition, context.recent_trades)
    if isinstance(condition, LargeTradeRatioCondition):
        return _large_trade_ratio_matches(condition, context.recent_trades)
    raise TypeError(f"Unhandled buy condition: {type(condition).__name__}")


def _compare(value: Decimal, condition: ThresholdCondition) -> bool:
    if condition.operator == "greaterThan":
        return value > condition.value
    if condition.operator == "lessThan":
        return value < condition.value
    low, high = condition.value
    return low <= value <= high


def _compare_best_pool(token: Token, condition: ThresholdCondition, attribute: str) -> bool:
    pool = best_pool(token.pools)
    if pool is None:
        return False
    value = getattr(pool, attribute)
    if value is None:
        return False
    return _compare(Decimal(value), condition)


def _age_matches(token: Token, condition: AgeCondition, now: datetime) -> bool:
    created_at = token.created_at
    if created_at is None:
        return False
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    if created_at > now:
        logger.warning(
            "Token creation time in the future, anomaly",
            token_id=token.id,
            created_at=created_at.isoformat(),
        )
        return False

    age_days = int((now - created_at).total_seconds() // SECONDS_PER_DAY)
    if condition.operator == "greaterThan":
        return age_days > condition.days
    if condition.operator == "lessThan":
        return age_days < condition.days
    return age_days == condition.days


def _blacklist_passes(symbol: str, condition: BlacklistCondition, blacklist: list[str]) -> bool:
    if condition.check_dollar_sign and "$" in symbol:
        return False
    if condition.check_blacklist:
        lowered = symbol.lower()
        if any(word.lower() in lowered for word in blacklist):
            return False
    return True


def _side_ratio_matches(
    condition: Union[BuyRatioCondition, SellRatioCondition],
    trades: list[Trade],
) -> bool:
    if not trades:
        return False
    side = "buy" if isinstance(condition, BuyRatioCondition) else "sell"
    ratio = Decimal(sum(1 for trade in trades if trade.type == side)) / Decimal(len(trades))
    return condition.min <= ratio <= condition.max


def _large_trade_ratio_matches(condition: LargeTradeRatioCondition, trades: list[Trade]) -> bool:
    considered = [
        trade for trade in trades
        if condition.trade_type == "both" or trade.type == condition.trade_type
    ]
    if not considered:
        return False
    large = sum(1 for trade in considered if trade.native_amount > condition.large_trade_threshold)
    ratio = Decimal(large) / Decimal(len(considered))
    return condition.min <= ratio <= condition.max


# ===================
# Sell conditions
# ===================

def _price_change_matches(token: Token, condition: PriceChangeCondition, context: EvaluationContext) -> bool:
    pool = best_pool(token.pools)
    if pool is None or not pool.price_in_fiat:
        return False

    last_price = context.last_transaction_price
    if not last_price:
        return False

    change = (Decimal(pool.price_in_fiat) - last_price) / last_price * HUNDRED
    if condition.operator == "increasedBy":
        return change >= condition.value
    return change <= -condition.value
