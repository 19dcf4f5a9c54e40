"""
Tests for strategy logic validation.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from tontrader.strategy.logic import (
    BlacklistCondition,
    LargeTradeRatioCondition,
    MarketCapCondition,
    StrategyLogic,
)


class TestStrategyLogic:
    """Test parsing of stored strategy documents."""

    def test_parse_full_document(self):
        logic = StrategyLogic.model_validate({
            "buy": {
                "conditions": [
                    {"type": "marketCap", "operator": "greaterThan", "value": 50000},
                    {"type": "age", "operator": "greaterThan", "days": 1},
                    {"type": "blacklist", "checkDollarSign": True, "checkBlacklist": False},
                    {"type": "liquidity", "operator": "between", "value": [1000, 5000]},
                ],
                "action": {"type": "fixedAmount", "amount": 1.5},
            },
            "sell": [
                {
                    "condition": {"type": "price", "operator": "increasedBy", "value": 20},
                    "action": {"type": "percentageOfHoldings", "amount": 50},
                },
            ],
        })

        conditions = logic.buy.conditions
        assert isinstance(conditions[0], MarketCapCondition)
        assert conditions[0].value == Decimal("50000")
        assert isinstance(conditions[2], BlacklistCondition)
        assert conditions[2].check_blacklist is False
        assert conditions[3].value == (Decimal("1000"), Decimal("5000"))
        assert logic.buy.action.amount == Decimal("1.5")
        assert logic.sell[0].action.amount == Decimal("50")
        assert not logic.uses_trade_activity

    def test_unknown_condition_rejected(self):
        """Unknown kinds fail at the boundary instead of evaluating false."""
        with pytest.raises(ValidationError):
            StrategyLogic.model_validate({
                "buy": {
                    "conditions": [{"type": "volume", "operator": "greaterThan", "value": 1}],
                    "action": {"type": "fixedAmount", "amount": 1},
                },
            })

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            StrategyLogic.model_validate({
                "sell": [{
                    "condition": {"type": "price", "operator": "doubled", "value": 2},
                    "action": {"type": "percentageOfHoldings", "amount": 50},
                }],
            })

    def test_between_requires_range(self):
        with pytest.raises(ValidationError):
            MarketCapCondition(type="marketCap", operator="between", value=Decimal("10"))

    def test_between_requires_ordered_range(self):
        with pytest.raises(ValidationError):
            MarketCapCondition(type="marketCap", operator="between", value=(Decimal("10"), Decimal("5")))

    def test_scalar_operator_rejects_range(self):
        with pytest.raises(ValidationError):
            MarketCapCondition(type="marketCap", operator="lessThan", value=(Decimal("1"), Decimal("5")))

    def test_percentage_bounds(self):
        with pytest.raises(ValidationError):
            StrategyLogic.model_validate({
                "sell": [{
                    "condition": {"type": "price", "operator": "decreasedBy", "value": 10},
                    "action": {"type": "percentageOfHoldings", "amount": 150},
                }],
            })

    def test_trade_activity_detection(self):
        logic = StrategyLogic.model_validate({
            "buy": {
                "conditions": [{
                    "type": "largeTradeRatio",
                    "min": 0.1,
                    "max": 0.9,
                    "largeTradeThreshold": 100,
                    "tradeType": "buy",
                }],
                "action": {"type": "fixedAmount", "amount": 1},
            },
        })

        condition = logic.buy.conditions[0]
        assert isinstance(condition, LargeTradeRatioCondition)
        assert condition.trade_type == "buy"
        assert logic.uses_trade_activity

    def test_document_round_trip_uses_aliases(self):
        document = {
            "buy": {
                "conditions": [{"type": "blacklist", "checkDollarSign": True, "checkBlacklist": True}],
                "action": {"type": "fixedAmount", "amount": 2},
            },
            "sell": [],
        }
        stored = StrategyLogic.model_validate(document).to_document()

        assert stored["buy"]["conditions"][0]["checkDollarSign"] is True
        assert StrategyLogic.model_validate(stored) == StrategyLogic.model_validate(document)
