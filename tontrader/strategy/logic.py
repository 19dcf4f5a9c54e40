"""
Strategy logic documents.

A strategy is stored as JSON and validated into these models at the
boundary. Condition and action kinds form closed unions keyed by ``type``;
an unknown kind or operator fails validation instead of evaluating false.
"""

from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Operand = Union[Decimal, tuple[Decimal, Decimal]]


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class ThresholdCondition(_Model):
    """Numeric comparison against the best pool snapshot."""
    operator: Literal["greaterThan", "lessThan", "between"]
    value: Operand

    @model_validator(mode="after")
    def check_operand(self):
        if self.operator == "between":
            if not isinstance(self.value, tuple):
                raise ValueError("between requires a [min, max] range")
            low, high = self.value
            if low > high:
                raise ValueError("between range must satisfy min <= max")
        elif isinstance(self.value, tuple):
            raise ValueError(f"{self.operator} requires a single value")
        return self


# ===================
# Buy conditions
# ===================

class TokenNameCondition(_Model):
    type: Literal["tokenName"]
    operator: Literal["contains"] = "contains"
    value: str = Field(..., min_length=1)


class MarketCapCondition(ThresholdCondition):
    type: Literal["marketCap"]


class LiquidityCondition(ThresholdCondition):
    type: Literal["liquidity"]


class PriceCondition(ThresholdCondition):
    type: Literal["price"]


class AgeCondition(_Model):
    type: Literal["age"]
    operator: Literal["greaterThan", "lessThan", "equal"]
    days: int = Field(..., ge=0)


class BlacklistCondition(_Model):
    type: Literal["blacklist"]
    check_dollar_sign: bool = Field(default=True, alias="checkDollarSign")
    check_blacklist: bool = Field(default=True, alias="checkBlacklist")


class MinimumTradesCondition(_Model):
    """At least ``count`` swaps in the pool's recent history."""
    type: Literal["minimumTrades"]
    count: int = Field(..., ge=1)


class _RatioCondition(_Model):
    min: Decimal = Field(..., ge=0, le=1)
    max: Decimal = Field(..., ge=0, le=1)

    @model_validator(mode="after")
    def check_range(self):
        if self.min > self.max:
            raise ValueError("min must not exceed max")
        return self


class BuyRatioCondition(_RatioCondition):
    type: Literal["buyRatio"]


class SellRatioCondition(_RatioCondition):
    type: Literal["sellRatio"]


class LargeTradeRatioCondition(_RatioCondition):
    """Share of recent trades above ``large_trade_threshold`` TON."""
    type: Literal["largeTradeRatio"]
    large_trade_threshold: Decimal = Field(..., gt=0, alias="largeTradeThreshold")
    trade_type: Literal["buy", "sell", "both"] = Field(default="both", alias="tradeType")


BuyCondition = Annotated[
    Union[
        TokenNameCondition,
        MarketCapCondition,
        LiquidityCondition,
        PriceCondition,
        AgeCondition,
        BlacklistCondition,
        MinimumTradesCondition,
        BuyRatioCondition,
        SellRatioCondition,
        LargeTradeRatioCondition,
    ],
    Field(discriminator="type"),
]

TRADE_ACTIVITY_CONDITIONS = (
    MinimumTradesCondition,
    BuyRatioCondition,
    SellRatioCondition,
    LargeTradeRatioCondition,
)


class FixedAmountAction(_Model):
    """Spend a fixed amount of TON."""
    type: Literal["fixedAmount"]
    amount: Decimal = Field(..., gt=0)


# Single kinds today; widen to discriminated unions when more are added
BuyAction = FixedAmountAction


class BuyRule(_Model):
    """All conditions must hold for the action to fire."""
    conditions: list[BuyCondition] = Field(default_factory=list)
    action: BuyAction


# ===================
# Sell rules
# ===================

class PriceChangeCondition(_Model):
    """Signed % change of the current price against the last trade price."""
    type: Literal["price"]
    operator: Literal["increasedBy", "decreasedBy"]
    value: Decimal = Field(..., ge=0)


SellCondition = PriceChangeCondition


class PercentageOfHoldingsAction(_Model):
    type: Literal["percentageOfHoldings"]
    amount: Decimal = Field(..., gt=0, le=100)


SellAction = PercentageOfHoldingsAction


class SellRule(_Model):
    condition: SellCondition
    action: SellAction


class StrategyLogic(_Model):
    """Buy rule (AND of conditions) plus ordered first-match-wins sell rules."""
    buy: Optional[BuyRule] = None
    sell: list[SellRule] = Field(default_factory=list)

    @property
    def uses_trade_activity(self) -> bool:
        if not self.buy:
            return False
        return any(isinstance(c, TRADE_ACTIVITY_CONDITIONS) for c in self.buy.conditions)

    def to_document(self) -> dict:
        """JSON-safe form for persistence."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
