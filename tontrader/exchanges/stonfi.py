"""
STON.fi exchange implementation.

Listings and swap simulation come from the STON.fi v1 REST API; TON is
routed through the pTON proxy jetton.
"""

from decimal import Decimal
from typing import Any, Optional

import httpx

from tontrader.config import settings
from tontrader.db.models import Exchange
from tontrader.exchanges.base import (
    NATIVE_ADDRESSES,
    PTON_ADDRESS,
    BaseExchange,
    ExchangeError,
    PoolListing,
    SwapRequest,
)
from tontrader.services.wallet import WalletService
from tontrader.utils.logging import get_logger
from tontrader.utils.units import denormalize, to_nano

logger = get_logger(__name__)


class StonFiExchange(BaseExchange):
    """STON.fi v1 router pools paired with TON."""

    exchange = Exchange.STONFI
    name = "STON.fi"

    def __init__(
        self,
        wallet_service: WalletService,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(wallet_service, api_url or settings.stonfi_api_url, transport)

    @property
    def pools_endpoint(self) -> str:
        return "/v1/pools"

    def parse_pools(self, data: Any) -> list[PoolListing]:
        listings = []
        for pool in (data or {}).get("pool_list", []):
            token0 = pool.get("token0_address")
            token1 = pool.get("token1_address")

            if token0 in NATIVE_ADDRESSES and token1 not in NATIVE_ADDRESSES:
                token_address, native_key, asset_key = token1, "reserve0", "reserve1"
            elif token1 in NATIVE_ADDRESSES and token0 not in NATIVE_ADDRESSES:
                token_address, native_key, asset_key = token0, "reserve1", "reserve0"
            else:
                continue

            try:
                listings.append(PoolListing(
                    exchange=self.exchange,
                    address=pool["address"],
                    token_address=token_address,
                    native_reserve=int(pool[native_key]),
                    asset_reserve=int(pool[asset_key]),
                ))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed STON.fi pool", pool=pool.get("address"))
        return listings

    async def _simulate(self, offer_address: str, ask_address: str, units: int) -> dict:
        """Ask the router for the minimum output at our slippage tolerance."""
        data = await self._request(
            "POST",
            "/v1/swap/simulate",
            params={
                "offer_address": offer_address,
                "ask_address": ask_address,
                "units": str(units),
                "slippage_tolerance": str(settings.slippage_percentage / Decimal(100)),
            },
        )
        if not data or "min_ask_units" not in data or "router_address" not in data:
            raise ExchangeError("Malformed swap simulation", self.exchange)
        return data

    async def build_buy_request(
        self,
        wallet_address: str,
        token_address: str,
        native_amount: Decimal,
    ) -> SwapRequest:
        pool = await self.find_pool(token_address)
        offer = to_nano(native_amount)
        simulation = await self._simulate(PTON_ADDRESS, token_address, offer)
        return SwapRequest(
            exchange=self.exchange,
            side="buy",
            wallet_address=wallet_address,
            pool_address=pool.address,
            token_address=token_address,
            offer_amount=offer,
            min_ask_amount=int(simulation["min_ask_units"]),
            gas_amount=to_nano(settings.swap_gas_amount),
            route={"router": simulation["router_address"], "proxy_ton": PTON_ADDRESS},
        )

    async def build_sell_request(
        self,
        wallet_address: str,
        token_address: str,
        token_amount: Decimal,
        decimals: int,
    ) -> SwapRequest:
        pool = await self.find_pool(token_address)
        offer = denormalize(token_amount, decimals)
        simulation = await self._simulate(token_address, PTON_ADDRESS, offer)
        return SwapRequest(
            exchange=self.exchange,
            side="sell",
            wallet_address=wallet_address,
            pool_address=pool.address,
            token_address=token_address,
            offer_amount=offer,
            min_ask_amount=int(simulation["min_ask_units"]),
            gas_amount=to_nano(settings.swap_gas_amount),
            route={"router": simulation["router_address"], "proxy_ton": PTON_ADDRESS},
        )
