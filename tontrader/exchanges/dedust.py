"""
DeDust exchange implementation.

Listings come from the public DeDust REST API. Swaps are volatile-pool
swaps through the DeDust vaults; min-out is derived from pool reserves.
"""

from decimal import Decimal
from typing import Any, Optional

import httpx

from tontrader.config import settings
from tontrader.db.models import Exchange
from tontrader.exchanges.base import (
    BaseExchange,
    PoolListing,
    SwapRequest,
    apply_slippage,
    expected_output,
)
from tontrader.services.wallet import WalletService
from tontrader.utils.logging import get_logger
from tontrader.utils.units import denormalize, to_nano

logger = get_logger(__name__)

MAINNET_FACTORY_ADDRESS = "EQBfBWT7X2BHg9tXAxzhz2aKiNTU1tpt5NsiK0uSDW_YAJ67"
# TON attached to the jetton transfer that carries a sell
JETTON_TRANSFER_VALUE = Decimal("0.3")


class DeDustExchange(BaseExchange):
    """DeDust volatile pools paired with native TON."""

    exchange = Exchange.DEDUST
    name = "DeDust"

    def __init__(
        self,
        wallet_service: WalletService,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(wallet_service, api_url or settings.dedust_api_url, transport)

    @property
    def pools_endpoint(self) -> str:
        return "/v2/pools"

    def parse_pools(self, data: Any) -> list[PoolListing]:
        listings = []
        for pool in data or []:
            assets = pool.get("assets") or []
            reserves = pool.get("reserves") or []
            if len(assets) != 2 or len(reserves) != 2:
                continue

            types = [asset.get("type") for asset in assets]
            if sorted(types) != ["jetton", "native"]:
                continue

            native_index = types.index("native")
            jetton_index = 1 - native_index
            token_address = assets[jetton_index].get("address")
            if not token_address:
                continue

            try:
                listings.append(PoolListing(
                    exchange=self.exchange,
                    address=pool["address"],
                    token_address=token_address,
                    native_reserve=int(reserves[native_index]),
                    asset_reserve=int(reserves[jetton_index]),
                ))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed DeDust pool", pool=pool.get("address"))
        return listings

    async def build_buy_request(
        self,
        wallet_address: str,
        token_address: str,
        native_amount: Decimal,
    ) -> SwapRequest:
        pool = await self.find_pool(token_address)
        offer = to_nano(native_amount)
        min_ask = apply_slippage(
            expected_output(offer, pool.native_reserve, pool.asset_reserve),
            settings.slippage_percentage,
        )
        return SwapRequest(
            exchange=self.exchange,
            side="buy",
            wallet_address=wallet_address,
            pool_address=pool.address,
            token_address=token_address,
            offer_amount=offer,
            min_ask_amount=min_ask,
            gas_amount=to_nano(settings.swap_gas_amount),
            route={
                "factory": MAINNET_FACTORY_ADDRESS,
                "vault": "native",
                "pool_type": "volatile",
            },
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
        min_ask = apply_slippage(
            expected_output(offer, pool.asset_reserve, pool.native_reserve),
            settings.slippage_percentage,
        )
        return SwapRequest(
            exchange=self.exchange,
            side="sell",
            wallet_address=wallet_address,
            pool_address=pool.address,
            token_address=token_address,
            offer_amount=offer,
            min_ask_amount=min_ask,
            gas_amount=to_nano(settings.swap_gas_amount),
            route={
                "factory": MAINNET_FACTORY_ADDRESS,
                "vault": "jetton",
                "pool_type": "volatile",
                "transfer_value": to_nano(JETTON_TRANSFER_VALUE),
            },
        )
