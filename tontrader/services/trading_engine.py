"""
Trading engine: evaluates every (token, active strategy) pair each cycle.

Jobs go through an asyncio.Queue drained by a bounded pool of workers.
A cycle ends only once every job has finished, so the next cycle never
overlaps it. A pending transaction for the (user, token, strategy) triple
blocks evaluation until the reconciler settles it.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from tontrader.config import settings
from tontrader.db.database import (
    get_all_active_strategies,
    get_all_tokens,
    get_latest_transaction_price,
    get_strategy_by_id,
    get_token_balance,
    get_token_by_id,
    has_pending_transaction,
)
from tontrader.services.tonapi import TonApiClient, tonapi_client
from tontrader.services.trade_executor import TradeExecutor
from tontrader.strategy.evaluator import (
    EvaluationContext,
    NoAction,
    best_pool,
    evaluate_strategy,
)
from tontrader.strategy.logic import StrategyLogic
from tontrader.utils.logging import LoggerMixin, log_context

ERROR_BACKOFF_SECONDS = 5.0


@dataclass(frozen=True)
class TradingJob:
    token_id: str
    strategy_id: str
    user_id: str


class TradingEngine(LoggerMixin):
    """Continuous trading cycles over all tokens and active strategies."""

    def __init__(
        self,
        executor: Optional[TradeExecutor] = None,
        tonapi: Optional[TonApiClient] = None,
        concurrency: Optional[int] = None,
        cycle_pause: Optional[float] = None,
    ):
        self.executor = executor or TradeExecutor()
        self.tonapi = tonapi or tonapi_client
        self.concurrency = concurrency or settings.trading_concurrency
        self.cycle_pause = settings.trading_cycle_pause if cycle_pause is None else cycle_pause

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ===================
    # Lifecycle
    # ===================

    async def start(self) -> None:
        if self._running:
            self.log.warning("Trading engine already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        self.log.info("Trading engine started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop after the running cycle drains."""
        self._running = False
        if self._task:
            await self._task
            self._task = None
        self.log.info("Trading engine stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
                await asyncio.sleep(self.cycle_pause)
            except Exception as e:
                self.log.error("Trading cycle failed", error=str(e), exc_info=True)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    # ===================
    # Cycle
    # ===================

    async def run_cycle(self) -> int:
        """Run one trading cycle. Returns the number of jobs processed."""
        started = time.monotonic()
        tokens, strategies = await asyncio.gather(get_all_tokens(), get_all_active_strategies())

        queue: asyncio.Queue[TradingJob] = asyncio.Queue()
        for token in tokens:
            for strategy in strategies:
                queue.put_nowait(TradingJob(token.id, strategy.id, strategy.user_id))

        jobs = queue.qsize()
        if jobs:
            workers = [
                asyncio.create_task(self._worker(queue))
                for _ in range(min(self.concurrency, jobs))
            ]
            try:
                await queue.join()
            finally:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        self.log.info(
            "Trading cycle completed",
            tokens=len(tokens),
            strategies=len(strategies),
            jobs=jobs,
            duration=round(time.monotonic() - started, 3),
        )
        return jobs

    async def _worker(self, queue: "asyncio.Queue[TradingJob]") -> None:
        while True:
            job = await queue.get()
            try:
                await self.process_job(job)
            except Exception as e:
                self.log.error("Trading job failed", error=str(e), exc_info=True)
            finally:
                queue.task_done()

    async def process_job(self, job: TradingJob) -> bool:
        """Evaluate one pair and execute its decision. Returns True if a swap went out."""
        with log_context(user_id=job.user_id, token_id=job.token_id, strategy_id=job.strategy_id):
            if await has_pending_transaction(job.user_id, job.token_id, job.strategy_id):
                self.log.debug("Pending transaction in flight, skipping pair")
                return False

            token = await get_token_by_id(job.token_id)
            strategy = await get_strategy_by_id(job.strategy_id)
            if token is None or strategy is None:
                self.log.error("Token or strategy not found for evaluation")
                return False
            if not strategy.is_active:
                return False

            try:
                logic = StrategyLogic.model_validate(strategy.logic)
            except ValidationError as e:
                self.log.error("Invalid strategy logic", error=str(e))
                return False

            balance = await get_token_balance(job.user_id, job.token_id)
            context = EvaluationContext(
                last_transaction_price=await get_latest_transaction_price(job.token_id),
                symbol_blacklist=settings.symbol_blacklist,
            )
            if logic.uses_trade_activity:
                pool = best_pool(token.pools)
                if pool is not None:
                    context.recent_trades = await self.tonapi.get_recent_trades(pool.address, token.decimals)

            decision = evaluate_strategy(token, logic, balance, context)
            if isinstance(decision, NoAction):
                return False

            self.log.info("Strategy fired", decision=type(decision).__name__, symbol=token.symbol)
            return await self.executor.execute(token, strategy, decision)
