"""
Trade execution: guards, swap submission and pending-transaction bookkeeping.

A swap is submitted at most once per decision. Only a submitted swap
produces a Transaction row; the reconciler settles it later.
"""

import asyncio
from decimal import Decimal
from typing import Optional

from tontrader.config import settings
from tontrader.db.database import (
    create_transaction,
    get_net_investment_for_strategy,
    get_pending_investment_for_strategy,
)
from tontrader.db.models import Pool, Strategy, Token, TransactionType
from tontrader.exchanges import ExchangeRegistry, exchange_registry
from tontrader.services.fee import calculate_fee, collect_fee
from tontrader.services.wallet import WalletNotFoundError, WalletService, wallet_service
from tontrader.strategy.evaluator import BuyDecision, Decision, SellDecision, best_pool
from tontrader.utils.logging import LoggerMixin
from tontrader.utils.units import round_down

ZERO = Decimal("0")


class TradeExecutor(LoggerMixin):
    """Turns buy/sell decisions into submitted swaps."""

    def __init__(
        self,
        wallet: Optional[WalletService] = None,
        registry: Optional[ExchangeRegistry] = None,
    ):
        self.wallet = wallet or wallet_service
        self.registry = registry or exchange_registry
        # Strong references so fee tasks are not garbage collected mid-flight
        self._fee_tasks: set[asyncio.Task] = set()

    async def execute(self, token: Token, strategy: Strategy, decision: Decision) -> bool:
        """Dispatch a decision. Returns True when a swap was submitted."""
        if isinstance(decision, BuyDecision):
            return await self.buy(token, strategy, decision.amount)
        if isinstance(decision, SellDecision):
            return await self.sell(token, strategy, decision.amount)
        return False

    async def remaining_exposure(self, strategy: Strategy) -> Decimal:
        """TON the strategy may still commit: max_bet - net - pending, floored at zero."""
        net_investment, pending = await asyncio.gather(
            get_net_investment_for_strategy(strategy.id),
            get_pending_investment_for_strategy(strategy.id),
        )
        return max(Decimal(strategy.max_bet_amount) - net_investment - pending, ZERO)

    def _pool_for(self, token: Token, side: str) -> Optional[Pool]:
        pool = best_pool(token.pools)
        if pool is None or not pool.price_in_fiat:
            self.log.error("No priced pool for token, cannot trade", side=side, symbol=token.symbol)
            return None
        return pool

    async def _wallet_balance(self, user_id: str) -> Optional[tuple[str, Decimal]]:
        try:
            wallet = await self.wallet.get_ton_wallet(user_id)
        except WalletNotFoundError as e:
            self.log.error("TON wallet not found", user_id=user_id, error=str(e))
            return None

        balance = await self.wallet.get_balance(wallet.address)
        if balance is None:
            self.log.warning("Wallet balance unavailable, skipping trade", user_id=user_id)
            return None
        return wallet.address, balance

    # ===================
    # Buy
    # ===================

    async def buy(self, token: Token, strategy: Strategy, amount: Decimal) -> bool:
        pool = self._pool_for(token, "buy")
        if pool is None:
            return False

        wallet = await self._wallet_balance(strategy.user_id)
        if wallet is None:
            return False
        wallet_address, wallet_balance = wallet

        required = amount + settings.swap_gas_amount
        exposure = await self.remaining_exposure(strategy)
        if required > exposure:
            self.log.warning(
                "Buy exceeds remaining exposure, skipping",
                strategy_id=strategy.id,
                required=str(required),
                available=str(exposure),
            )
            return False
        if required > wallet_balance:
            self.log.warning(
                "Insufficient wallet balance for buy, skipping",
                user_id=strategy.user_id,
                required=str(required),
                balance=str(wallet_balance),
            )
            return False

        fee = calculate_fee(amount)
        net_amount = amount - fee

        exchange = self.registry.get(pool.exchange)
        self.log.info("Buying", amount=str(net_amount), symbol=token.symbol, exchange=pool.exchange.value)
        result = await exchange.buy(strategy.user_id, token.friendly_address, net_amount)
        if not result.success:
            self.log.error("Buy submission failed", symbol=token.symbol, error=result.error_message)
            return False

        transaction = await create_transaction(
            token_id=token.id,
            strategy_id=strategy.id,
            user_id=strategy.user_id,
            type=TransactionType.BUY,
            amount_token=ZERO,
            amount_native=net_amount,
            price_in_fiat=Decimal(pool.price_in_fiat),
            exchange=pool.exchange,
        )
        self._schedule_fee(strategy.user_id, wallet_address, transaction.id, fee)
        return True

    # ===================
    # Sell
    # ===================

    async def sell(self, token: Token, strategy: Strategy, amount: Decimal) -> bool:
        pool = self._pool_for(token, "sell")
        if pool is None:
            return False

        wallet = await self._wallet_balance(strategy.user_id)
        if wallet is None:
            return False
        wallet_address, wallet_balance = wallet

        if wallet_balance < settings.swap_gas_amount:
            self.log.warning(
                "Insufficient TON to cover sell gas, skipping",
                user_id=strategy.user_id,
                balance=str(wallet_balance),
            )
            return False

        amount = round_down(amount)
        if amount <= 0:
            self.log.warning("Sell amount rounds to zero, skipping", symbol=token.symbol)
            return False

        exchange = self.registry.get(pool.exchange)
        self.log.info("Selling", amount=str(amount), symbol=token.symbol, exchange=pool.exchange.value)
        result = await exchange.sell(strategy.user_id, token.friendly_address, amount, token.decimals)
        if not result.success:
            self.log.error("Sell submission failed", symbol=token.symbol, error=result.error_message)
            return False

        price_in_fiat = Decimal(pool.price_in_fiat)
        estimate = round_down(amount * price_in_fiat)
        fee = calculate_fee(estimate)

        transaction = await create_transaction(
            token_id=token.id,
            strategy_id=strategy.id,
            user_id=strategy.user_id,
            type=TransactionType.SELL,
            amount_token=amount,
            amount_native=estimate,
            price_in_fiat=price_in_fiat,
            exchange=pool.exchange,
        )
        self._schedule_fee(strategy.user_id, wallet_address, transaction.id, fee)
        return True

    # ===================
    # Fees
    # ===================

    def _schedule_fee(self, user_id: str, wallet_address: str, transaction_id: str, fee: Decimal) -> None:
        task = asyncio.create_task(self._collect_fee(user_id, wallet_address, transaction_id, fee))
        self._fee_tasks.add(task)
        task.add_done_callback(self._fee_tasks.discard)

    async def _collect_fee(self, user_id: str, wallet_address: str, transaction_id: str, fee: Decimal) -> None:
        try:
            await collect_fee(self.wallet, user_id, wallet_address, transaction_id, fee)
        except Exception as e:
            # TODO: a compensating job should retry rows with collected=False
            self.log.error("Fee collection failed", transaction_id=transaction_id, error=str(e), exc_info=True)

    async def wait_for_fees(self) -> None:
        """Wait for in-flight fee transfers (used on shutdown)."""
        if self._fee_tasks:
            await asyncio.gather(*list(self._fee_tasks), return_exceptions=True)
