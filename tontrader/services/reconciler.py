"""
Transaction reconciler: settles pending swaps against on-chain events.

A pending transaction is matched to a JettonSwap action in the user's
recent wallet events. Matches settle it, timeouts fail it, and anything
else leaves it pending for the next cycle. Every status change goes through
``transition_transaction``, which only touches rows still pending.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from tontrader.config import settings
from tontrader.db.database import (
    get_claimed_chain_tx_ids,
    get_pending_transactions,
    transition_transaction,
)
from tontrader.db.models import Transaction, TransactionStatus, TransactionType
from tontrader.services.tonapi import TonApiClient, tonapi_client
from tontrader.services.wallet import WalletNotFoundError, WalletService, wallet_service
from tontrader.utils.logging import LoggerMixin, log_context
from tontrader.utils.units import denormalize, from_nano, normalize, to_nano

EVENT_LOOKBACK = 30


class Outcome(str, Enum):
    """What a reconciliation attempt did to one transaction."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    PENDING = "pending"


@dataclass
class SwapMatch:
    """A JettonSwap action matched to a pending transaction."""
    event_id: str
    ok: bool
    swap: dict


@dataclass
class ReconcileResult:
    """Counters for one reconciliation cycle."""
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    still_pending: int = 0


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _raw_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def find_swap(
    transaction: Transaction,
    events: list[dict],
    swap_gas: Decimal,
    exclude: frozenset = frozenset(),
) -> Optional[SwapMatch]:
    """
    Find the swap event for a transaction.

    Buys match on the TON sent (net amount plus attached gas, in nanoTON)
    and the jetton received; sells on the jetton units sent and the jetton
    given up. Event ids in ``exclude`` already settled a transaction.
    """
    token = transaction.token
    if transaction.type == TransactionType.BUY:
        expected = to_nano(Decimal(transaction.amount_native) + swap_gas)
        amount_key, master_key = "ton_in", "jetton_master_out"
    else:
        expected = denormalize(Decimal(transaction.amount_token), token.decimals)
        amount_key, master_key = "amount_in", "jetton_master_in"

    for event in events:
        event_id = event.get("event_id")
        if event_id in exclude:
            continue
        for action in event.get("actions", []):
            if action.get("type") != "JettonSwap":
                continue
            swap = action.get("JettonSwap") or {}
            master = swap.get(master_key) or {}
            if _raw_int(swap.get(amount_key)) == expected and master.get("address") == token.raw_address:
                return SwapMatch(event_id=event_id, ok=action.get("status") == "ok", swap=swap)
    return None


class TransactionReconciler(LoggerMixin):
    """Resolves pending transactions to success or failure."""

    def __init__(
        self,
        tonapi: Optional[TonApiClient] = None,
        wallet: Optional[WalletService] = None,
        timeout_hours: Optional[int] = None,
    ):
        self.tonapi = tonapi or tonapi_client
        self.wallet = wallet or wallet_service
        self.timeout = timedelta(hours=timeout_hours or settings.pending_timeout_hours)

    async def run_once(self, now: Optional[datetime] = None) -> ReconcileResult:
        """Run one reconciliation cycle."""
        now = now or datetime.now(timezone.utc)
        result = ReconcileResult()

        pending = await get_pending_transactions()
        if not pending:
            return result

        by_user: dict[str, list[Transaction]] = defaultdict(list)
        for transaction in pending:
            by_user[transaction.user_id].append(transaction)

        outcomes = await asyncio.gather(
            *(self._reconcile_user(user_id, transactions, now) for user_id, transactions in by_user.items())
        )
        for statuses in outcomes:
            for outcome in statuses:
                if outcome == Outcome.TIMED_OUT:
                    result.timed_out += 1
                elif outcome == Outcome.SUCCEEDED:
                    result.succeeded += 1
                elif outcome == Outcome.FAILED:
                    result.failed += 1
                else:
                    result.still_pending += 1

        self.log.info(
            "Reconciliation cycle completed",
            pending=len(pending),
            succeeded=result.succeeded,
            failed=result.failed,
            timed_out=result.timed_out,
        )
        return result

    async def _reconcile_user(
        self,
        user_id: str,
        transactions: list[Transaction],
        now: datetime,
    ) -> list[Outcome]:
        statuses: list[Outcome] = []
        live: list[Transaction] = []

        for transaction in transactions:
            if now - _as_utc(transaction.created_at) >= self.timeout:
                statuses.append(await self._isolated(transaction, self._expire(transaction)))
            else:
                live.append(transaction)

        if not live:
            return statuses

        events = await self._wallet_events(user_id)
        if events is None:
            return statuses + [Outcome.PENDING] * len(live)

        # Events that settled an earlier transaction stay in the lookback window
        event_ids = [event["event_id"] for event in events if event.get("event_id")]
        claimed = await get_claimed_chain_tx_ids(event_ids)
        for transaction in live:
            statuses.append(await self._isolated(transaction, self._settle(transaction, events, claimed)))
        return statuses

    async def _isolated(self, transaction: Transaction, coro) -> Outcome:
        with log_context(transaction_id=transaction.id, user_id=transaction.user_id):
            try:
                return await coro
            except Exception as e:
                self.log.error("Failed to reconcile transaction", error=str(e), exc_info=True)
                return Outcome.PENDING

    async def _wallet_events(self, user_id: str) -> Optional[list[dict]]:
        try:
            wallet = await self.wallet.get_ton_wallet(user_id)
        except WalletNotFoundError:
            self.log.error("TON wallet not found for pending transactions", user_id=user_id)
            return None
        return await self.tonapi.get_account_events(wallet.address, EVENT_LOOKBACK)

    async def _expire(self, transaction: Transaction) -> Outcome:
        if await transition_transaction(transaction.id, TransactionStatus.FAILED):
            self.log.warning("Pending transaction timed out", created_at=transaction.created_at.isoformat())
            return Outcome.TIMED_OUT
        return Outcome.PENDING

    async def _settle(
        self,
        transaction: Transaction,
        events: list[dict],
        claimed: set[str],
    ) -> Outcome:
        match = find_swap(transaction, events, settings.swap_gas_amount, frozenset(claimed))
        if match is None:
            return Outcome.PENDING
        claimed.add(match.event_id)

        if not match.ok:
            changed = await transition_transaction(
                transaction.id,
                TransactionStatus.FAILED,
                chain_tx_id=match.event_id,
            )
            if changed:
                self.log.warning("Swap failed on chain", chain_tx_id=match.event_id)
            return Outcome.FAILED if changed else Outcome.PENDING

        decimals = transaction.token.decimals
        if transaction.type == TransactionType.BUY:
            amount_token = normalize(_raw_int(match.swap.get("amount_out")) or 0, decimals)
            changed = await transition_transaction(
                transaction.id,
                TransactionStatus.SUCCESS,
                chain_tx_id=match.event_id,
                balance_delta=amount_token,
                amount_token=amount_token,
            )
        else:
            ton_out = _raw_int(match.swap.get("ton_out"))
            values = {"amount_native": from_nano(ton_out)} if ton_out is not None else {}
            changed = await transition_transaction(
                transaction.id,
                TransactionStatus.SUCCESS,
                chain_tx_id=match.event_id,
                balance_delta=-Decimal(transaction.amount_token),
                **values,
            )

        if changed:
            self.log.info("Transaction settled", chain_tx_id=match.event_id, type=transaction.type.value)
        return Outcome.SUCCEEDED if changed else Outcome.PENDING
