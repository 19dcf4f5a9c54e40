"""
Exchange abstraction layer for TON AMMs.
All exchanges implement this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tontrader.config import settings
from tontrader.db.models import Exchange
from tontrader.services.wallet import WalletError, WalletService
from tontrader.utils.logging import get_logger

logger = get_logger(__name__)

# Native TON as it appears in exchange listings
TON_ADDRESS = "EQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAM9c"
# STON.fi v1 proxy-TON jetton
PTON_ADDRESS = "EQCM3B12QK1e4yZSf8GtBRT0aLMNyEsBc_DhVfRRtOEffLez"
NATIVE_ADDRESSES = frozenset({TON_ADDRESS, PTON_ADDRESS})


@dataclass
class PoolListing:
    """One TON/jetton pool as reported by an exchange listing."""
    exchange: Exchange
    address: str
    token_address: str

    # Raw on-chain units
    native_reserve: int
    asset_reserve: int


@dataclass
class SwapRequest:
    """Everything the custody signer needs to build and broadcast a swap."""
    exchange: Exchange
    side: str  # "buy" or "sell"
    wallet_address: str
    pool_address: str
    token_address: str

    # Raw units: nanoTON for buys, jetton units for sells
    offer_amount: int
    min_ask_amount: int
    gas_amount: int

    # Exchange-specific routing (router/vault addresses)
    route: dict[str, Any] = field(default_factory=dict)


@dataclass
class SwapResult:
    """Outcome of a single swap submission."""
    success: bool

    # Message hash returned by the signer once broadcast
    reference: Optional[str] = None
    error_message: Optional[str] = None


class ExchangeError(Exception):
    """Base exception for exchange errors."""
    def __init__(self, message: str, exchange: Exchange, code: Optional[str] = None):
        self.message = message
        self.exchange = exchange
        self.code = code
        super().__init__(f"[{exchange.value}] {message}")


class ExchangeUnavailableError(ExchangeError):
    """Raised on network errors and 5xx responses."""
    pass


class RateLimitError(ExchangeUnavailableError):
    """Raised when rate limit is hit."""
    pass


class PoolNotFoundError(ExchangeError):
    """Raised when no ready TON pool exists for a token."""
    pass


def expected_output(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Constant-product output for ``amount_in``, before exchange fees."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    return reserve_out * amount_in // (reserve_in + amount_in)


def deepest_by_token(listings: list[PoolListing]) -> dict[str, PoolListing]:
    """Deepest (largest TON reserve) pool per token address."""
    by_token: dict[str, PoolListing] = {}
    for listing in listings:
        current = by_token.get(listing.token_address)
        if current is None or listing.native_reserve > current.native_reserve:
            by_token[listing.token_address] = listing
    return by_token


def apply_slippage(amount: int, slippage_percentage: Decimal) -> int:
    return int(Decimal(amount) * (Decimal(100) - slippage_percentage) / Decimal(100))


class BaseExchange(ABC):
    """
    Abstract base class for TON AMM exchanges.

    The HTTP client is created explicitly by ``initialize`` and checked by
    ``is_ready``; swaps go through the wallet gateway, which owns signing.
    """

    exchange: Exchange
    name: str

    def __init__(
        self,
        wallet_service: WalletService,
        api_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.wallet_service = wallet_service
        self._api_url = api_url
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        # token address -> last listing seen for it
        self._pools_by_token: dict[str, PoolListing] = {}

    # ===================
    # Lifecycle
    # ===================

    async def initialize(self) -> None:
        """Create the HTTP client."""
        self._http = httpx.AsyncClient(
            base_url=self._api_url,
            timeout=30.0,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        logger.info("Exchange initialized", exchange=self.exchange.value, api_url=self._api_url)

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
        retry=retry_if_exception_type(ExchangeUnavailableError),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make a request to the exchange API with retry on transient errors."""
        if not self.is_ready:
            raise ExchangeUnavailableError("Client not initialized", self.exchange)

        try:
            response = await self._http.request(method, endpoint, **kwargs)
        except httpx.TransportError as e:
            raise ExchangeUnavailableError(f"Transport error: {e}", self.exchange)

        if response.status_code == 429:
            logger.warning("Rate limited, retrying", exchange=self.exchange.value)
            raise RateLimitError("Rate limit exceeded", self.exchange, "429")
        if response.status_code >= 500:
            raise ExchangeUnavailableError(
                f"API error {response.status_code}", self.exchange, str(response.status_code)
            )
        if response.status_code >= 400:
            raise ExchangeError(
                f"API error {response.status_code}: {response.text[:200]}",
                self.exchange,
                str(response.status_code),
            )
        return response.json()

    # ===================
    # Listings
    # ===================

    async def list_pools(self) -> list[PoolListing]:
        """
        Fetch every TON-paired pool on the exchange.

        Raises:
            ExchangeError: once the retry budget is exhausted
        """
        data = await self._request("GET", self.pools_endpoint)
        listings = self.parse_pools(data)
        self._pools_by_token = deepest_by_token(listings)
        return listings

    async def find_pool(self, token_address: str) -> PoolListing:
        """Pool for a token, from the last listing or a fresh fetch."""
        listing = self._pools_by_token.get(token_address)
        if listing is None:
            await self.list_pools()
            listing = self._pools_by_token.get(token_address)
        if listing is None or listing.native_reserve <= 0 or listing.asset_reserve <= 0:
            raise PoolNotFoundError(f"No ready pool for {token_address}", self.exchange)
        return listing

    @property
    @abstractmethod
    def pools_endpoint(self) -> str:
        """Path of the full pool listing."""
        pass

    @abstractmethod
    def parse_pools(self, data: Any) -> list[PoolListing]:
        """Normalize the raw listing payload, dropping non-TON pairs."""
        pass

    # ===================
    # Swaps
    # ===================

    @abstractmethod
    async def build_buy_request(
        self,
        wallet_address: str,
        token_address: str,
        native_amount: Decimal,
    ) -> SwapRequest:
        """TON -> jetton swap for ``native_amount`` TON."""
        pass

    @abstractmethod
    async def build_sell_request(
        self,
        wallet_address: str,
        token_address: str,
        token_amount: Decimal,
        decimals: int,
    ) -> SwapRequest:
        """Jetton -> TON swap for ``token_amount`` jettons."""
        pass

    async def buy(self, user_id: str, token_address: str, native_amount: Decimal) -> SwapResult:
        """Submit a buy once. Never retried: a duplicate swap spends funds twice."""
        try:
            wallet = await self.wallet_service.get_ton_wallet(user_id)
            request = await self.build_buy_request(wallet.address, token_address, native_amount)
            reference = await self.wallet_service.send_swap(user_id, request)
        except (ExchangeError, WalletError) as e:
            logger.error(
                "Buy failed",
                exchange=self.exchange.value,
                token=token_address,
                amount=str(native_amount),
                error=str(e),
            )
            return SwapResult(success=False, error_message=str(e))

        logger.info("Buy submitted", exchange=self.exchange.value, token=token_address, reference=reference)
        return SwapResult(success=True, reference=reference)

    async def sell(
        self,
        user_id: str,
        token_address: str,
        token_amount: Decimal,
        decimals: int = 9,
    ) -> SwapResult:
        """Submit a sell once."""
        try:
            wallet = await self.wallet_service.get_ton_wallet(user_id)
            request = await self.build_sell_request(wallet.address, token_address, token_amount, decimals)
            reference = await self.wallet_service.send_swap(user_id, request)
        except (ExchangeError, WalletError) as e:
            logger.error(
                "Sell failed",
                exchange=self.exchange.value,
                token=token_address,
                amount=str(token_amount),
                error=str(e),
            )
            return SwapResult(success=False, error_message=str(e))

        logger.info("Sell submitted", exchange=self.exchange.value, token=token_address, reference=reference)
        return SwapResult(success=True, reference=reference)
