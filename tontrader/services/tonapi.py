"""
TonApi (tonapi.io v2) client: chain data reader and TON price oracle.

Every public method fails closed: upstream errors are retried with
backoff, logged, and then surfaced as None (or an empty list), never raised
into trading logic.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tontrader.config import settings
from tontrader.utils.logging import get_logger
from tontrader.utils.units import from_nano, normalize

logger = get_logger(__name__)

NATIVE_SYMBOL = "TON"
DEDUST_AMOUNT_PATTERN = re.compile(r"Amount\s*=\s*(\d+)")


class TonApiError(Exception):
    """Non-retryable TonApi failure (4xx, malformed body)."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(f"[tonapi] {message}")


class TonApiUnavailableError(TonApiError):
    """Transient failure: network error, 429 or 5xx."""
    pass


@dataclass
class Trade:
    """A swap observed in a pool's recent history."""
    type: str  # "buy" or "sell"
    token_amount: Decimal
    native_amount: Decimal


class TonApiClient:
    """Async HTTP client for the TonApi REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url or settings.ton_api_url
        self._api_key = api_key if api_key is not None else settings.ton_api_key
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=20.0,
            headers=headers,
            transport=self._transport,
        )
        logger.info("TonApi client initialized", api_key_set=bool(self._api_key))

    @property
    def is_ready(self) -> bool:
        return self._http is not None and not self._http.is_closed

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    @retry(
        stop=stop_after_attempt(settings.api_max_retries),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TonApiUnavailableError),
        reraise=True,
    )
    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        """GET a TonApi path with retry on transient failures."""
        if not self.is_ready:
            raise RuntimeError("TonApi client not initialized")

        try:
            response = await self._http.get(path, params=params)
        except httpx.TransportError as e:
            raise TonApiUnavailableError(f"Transport error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("TonApi unavailable, retrying", path=path, status=response.status_code)
            raise TonApiUnavailableError(f"HTTP {response.status_code}", response.status_code)
        if response.status_code >= 400:
            raise TonApiError(f"HTTP {response.status_code}: {response.text[:200]}", response.status_code)

        return response.json()

    async def _get_or_none(self, path: str, params: Optional[dict] = None) -> Optional[Any]:
        try:
            return await self._get(path, params=params)
        except (TonApiError, ValueError) as e:
            logger.warning("TonApi request failed", path=path, error=str(e))
            return None

    # ===================
    # Accounts
    # ===================

    async def get_account(self, address: str) -> Optional[dict]:
        return await self._get_or_none(f"/v2/accounts/{address}")

    async def get_account_balance(self, address: str) -> Optional[int]:
        """Account balance in nanoTON."""
        account = await self.get_account(address)
        if not account or "balance" not in account:
            return None
        return int(account["balance"])

    async def get_account_events(self, address: str, limit: int = 1) -> Optional[list[dict]]:
        data = await self._get_or_none(f"/v2/accounts/{address}/events", params={"limit": limit})
        if data is None:
            return None
        return data.get("events", [])

    async def get_account_transactions(
        self,
        address: str,
        limit: int = 1,
        sort_order: str = "desc",
    ) -> Optional[list[dict]]:
        data = await self._get_or_none(
            f"/v2/blockchain/accounts/{address}/transactions",
            params={"limit": limit, "sort_order": sort_order},
        )
        if data is None:
            return None
        return data.get("transactions", [])

    async def get_first_transaction_time(self, address: str) -> Optional[datetime]:
        """Time of the earliest transaction on an account (token creation)."""
        transactions = await self.get_account_transactions(address, limit=1, sort_order="asc")
        if not transactions or "utime" not in transactions[0]:
            return None
        return datetime.fromtimestamp(int(transactions[0]["utime"]), tz=timezone.utc)

    # ===================
    # Jettons & Rates
    # ===================

    async def fetch_token_metadata(self, address: str) -> Optional[dict]:
        """
        Jetton master info.

        Returns:
            Dict with total_supply (raw units) and metadata
            (address, name, symbol, decimals, image, description), or None
        """
        data = await self._get_or_none(f"/v2/jettons/{address}")
        if not data or "metadata" not in data:
            return None
        return data

    async def fetch_fiat_price(self, symbol: str = NATIVE_SYMBOL, currency: str = "usd") -> Optional[Decimal]:
        """Current price of ``symbol`` in ``currency``."""
        data = await self._get_or_none("/v2/rates", params={"tokens": symbol, "currencies": currency})
        if not data:
            return None
        try:
            price = data["rates"][symbol]["prices"][currency.upper()]
            return Decimal(str(price))
        except (KeyError, TypeError, InvalidOperation):
            logger.warning("Unexpected rates payload", symbol=symbol)
            return None

    # ===================
    # Pool Activity
    # ===================

    async def get_recent_trades(self, pool_address: str, decimals: int) -> list[Trade]:
        """Swaps from the last 100 events of a pool account."""
        events = await self.get_account_events(pool_address, 100)
        if not events:
            return []
        return parse_trades(events, decimals)


def parse_trades(events: list[dict], decimals: int) -> list[Trade]:
    """Extract STON.fi and DeDust swaps from account events, skipping mints."""
    trades: list[Trade] = []
    for event in events:
        actions = event.get("actions", [])
        if any(action.get("type") == "JettonMint" for action in actions):
            continue

        for parser in (_parse_stonfi_trade, _parse_dedust_trade):
            trade = parser(actions, decimals)
            if trade:
                trades.append(trade)
    return trades


def _parse_stonfi_trade(actions: list[dict], decimals: int) -> Optional[Trade]:
    for action in actions:
        swap = action.get("JettonSwap")
        if action.get("type") != "JettonSwap" or action.get("status") != "ok" or not swap:
            continue
        if swap.get("dex") != "stonfi":
            continue

        if swap.get("amount_in"):
            return Trade(
                type="sell",
                token_amount=normalize(swap["amount_in"], decimals),
                native_amount=from_nano(swap.get("ton_out") or 0),
            )
        if swap.get("amount_out"):
            return Trade(
                type="buy",
                token_amount=normalize(swap["amount_out"], decimals),
                native_amount=from_nano(swap.get("ton_in") or 0),
            )
        return None
    return None


def _dedust_exec(actions: list[dict], operation: str) -> Optional[dict]:
    for action in actions:
        execution = action.get("SmartContractExec")
        if action.get("type") == "SmartContractExec" and execution and execution.get("operation") == operation:
            return action
    return None


def _dedust_amount(action: dict) -> int:
    match = DEDUST_AMOUNT_PATTERN.search(action["SmartContractExec"].get("payload") or "")
    return int(match.group(1)) if match else 0


def _parse_dedust_trade(actions: list[dict], decimals: int) -> Optional[Trade]:
    swap = _dedust_exec(actions, "DedustSwapExternal")
    payout = _dedust_exec(actions, "DedustPayoutFromPool")
    if not swap or not payout or swap.get("status") != "ok":
        return None

    swap_amount = _dedust_amount(swap)
    payout_amount = _dedust_amount(payout)

    # TON in, more jetton units out
    if swap_amount < payout_amount:
        return Trade(
            type="buy",
            token_amount=normalize(payout_amount, decimals),
            native_amount=from_nano(swap_amount),
        )
    return Trade(
        type="sell",
        token_amount=normalize(swap_amount, decimals),
        native_amount=from_nano(payout_amount),
    )


# Singleton instance
tonapi_client = TonApiClient()
