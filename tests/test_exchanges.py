"""
Tests for the DeDust and STON.fi adapters.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import TOKEN_FRIENDLY, WALLET_ADDRESS
from tontrader.db.models import Exchange
from tontrader.exchanges import ExchangeRegistry
from tontrader.exchanges.base import (
    PTON_ADDRESS,
    TON_ADDRESS,
    ExchangeError,
    PoolListing,
    PoolNotFoundError,
    deepest_by_token,
    expected_output,
)
from tontrader.exchanges.dedust import DeDustExchange
from tontrader.exchanges.stonfi import StonFiExchange
from tontrader.services.wallet import WalletError

DEDUST_POOLS = [
    {
        "address": "EQDedustPool",
        "assets": [{"type": "native"}, {"type": "jetton", "address": TOKEN_FRIENDLY}],
        "reserves": [str(1000 * 10**9), str(500_000 * 10**9)],
    },
    {
        "address": "EQJettonJetton",
        "assets": [{"type": "jetton", "address": "EQa"}, {"type": "jetton", "address": "EQb"}],
        "reserves": ["1", "1"],
    },
    {
        "address": "EQBroken",
        "assets": [{"type": "native"}, {"type": "jetton", "address": "EQc"}],
        "reserves": ["many", "1"],
    },
]

STONFI_POOLS = {
    "pool_list": [
        {
            "address": "EQStonPool",
            "token0_address": TOKEN_FRIENDLY,
            "token1_address": PTON_ADDRESS,
            "reserve0": "800000000000",
            "reserve1": "2000000000000",
        },
        {
            "address": "EQStonOther",
            "token0_address": "EQx",
            "token1_address": "EQy",
            "reserve0": "1",
            "reserve1": "1",
        },
    ],
}


def wallet_service(reference="msg-hash"):
    service = AsyncMock()
    service.get_ton_wallet.return_value = SimpleNamespace(address=WALLET_ADDRESS)
    service.send_swap.return_value = reference
    return service


def dedust(service, handler=None) -> DeDustExchange:
    handler = handler or (lambda request: httpx.Response(200, json=DEDUST_POOLS))
    return DeDustExchange(service, api_url="https://dedust.test", transport=httpx.MockTransport(handler))


class TestListings:
    """Test pool listing normalization."""

    def test_dedust_keeps_ton_pairs_only(self):
        listings = dedust(wallet_service()).parse_pools(DEDUST_POOLS)

        assert len(listings) == 1
        assert listings[0].address == "EQDedustPool"
        assert listings[0].token_address == TOKEN_FRIENDLY
        assert listings[0].native_reserve == 1000 * 10**9
        assert listings[0].asset_reserve == 500_000 * 10**9

    def test_stonfi_orients_reserves(self):
        """pTON on either side counts as the native reserve."""
        exchange = StonFiExchange(wallet_service(), api_url="https://ston.test")

        listings = exchange.parse_pools(STONFI_POOLS)

        assert len(listings) == 1
        assert listings[0].token_address == TOKEN_FRIENDLY
        assert listings[0].native_reserve == 2_000_000_000_000
        assert listings[0].asset_reserve == 800_000_000_000

    def test_deepest_by_token(self):
        shallow = PoolListing(Exchange.STONFI, "EQ1", "EQtoken", 10, 10)
        deep = PoolListing(Exchange.STONFI, "EQ2", "EQtoken", 500, 10)

        assert deepest_by_token([shallow, deep])["EQtoken"] is deep

    def test_expected_output(self):
        assert expected_output(10, 100, 1000) == 90
        assert expected_output(0, 100, 1000) == 0
        assert expected_output(10, 0, 1000) == 0


class TestSwaps:
    """Test swap submission through the wallet gateway."""

    async def test_dedust_buy(self):
        service = wallet_service()
        exchange = dedust(service)
        await exchange.initialize()
        try:
            result = await exchange.buy("user-1", TOKEN_FRIENDLY, Decimal("1"))
        finally:
            await exchange.close()

        assert result.success
        assert result.reference == "msg-hash"

        user_id, request = service.send_swap.await_args.args
        assert user_id == "user-1"
        assert request.side == "buy"
        assert request.wallet_address == WALLET_ADDRESS
        assert request.pool_address == "EQDedustPool"
        assert request.offer_amount == 10**9
        # 20% below the constant-product output
        assert request.min_ask_amount == 399_600_399_600
        assert request.gas_amount == 250_000_000

    async def test_dedust_sell_uses_token_decimals(self):
        service = wallet_service()
        exchange = dedust(service)
        await exchange.initialize()
        try:
            result = await exchange.sell("user-1", TOKEN_FRIENDLY, Decimal("2.5"), decimals=6)
        finally:
            await exchange.close()

        assert result.success
        request = service.send_swap.await_args.args[1]
        assert request.side == "sell"
        assert request.offer_amount == 2_500_000
        assert request.route["vault"] == "jetton"

    async def test_broadcast_failure_is_not_retried(self):
        service = wallet_service()
        service.send_swap.side_effect = WalletError("signer down")
        exchange = dedust(service)
        await exchange.initialize()
        try:
            result = await exchange.buy("user-1", TOKEN_FRIENDLY, Decimal("1"))
        finally:
            await exchange.close()

        assert not result.success
        assert "signer down" in result.error_message
        assert service.send_swap.await_count == 1

    async def test_unknown_token_fails(self):
        service = wallet_service()
        exchange = dedust(service)
        await exchange.initialize()
        try:
            with pytest.raises(PoolNotFoundError):
                await exchange.find_pool("EQUnknown")
            result = await exchange.buy("user-1", "EQUnknown", Decimal("1"))
        finally:
            await exchange.close()

        assert not result.success
        service.send_swap.assert_not_awaited()

    async def test_stonfi_buy_uses_simulation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/pools":
                return httpx.Response(200, json=STONFI_POOLS)
            assert request.url.path == "/v1/swap/simulate"
            assert request.url.params["offer_address"] == PTON_ADDRESS
            assert request.url.params["slippage_tolerance"] == "0.2"
            return httpx.Response(200, json={"min_ask_units": "12345", "router_address": "EQRouter"})

        service = wallet_service()
        exchange = StonFiExchange(service, api_url="https://ston.test", transport=httpx.MockTransport(handler))
        await exchange.initialize()
        try:
            result = await exchange.buy("user-1", TOKEN_FRIENDLY, Decimal("3"))
        finally:
            await exchange.close()

        assert result.success
        request = service.send_swap.await_args.args[1]
        assert request.min_ask_amount == 12345
        assert request.route["router"] == "EQRouter"

    async def test_client_error_raises_exchange_error(self):
        exchange = dedust(wallet_service(), handler=lambda request: httpx.Response(400, text="bad"))
        await exchange.initialize()
        try:
            with pytest.raises(ExchangeError):
                await exchange.list_pools()
        finally:
            await exchange.close()


class TestRegistry:
    """Test the exchange registry."""

    def test_get(self):
        exchange = dedust(wallet_service())
        registry = ExchangeRegistry({Exchange.DEDUST: exchange})

        assert registry.get(Exchange.DEDUST) is exchange
        assert registry.all_exchanges == [Exchange.DEDUST]

    def test_unknown_exchange(self):
        registry = ExchangeRegistry({Exchange.DEDUST: dedust(wallet_service())})

        with pytest.raises(ValueError):
            registry.get(Exchange.STONFI)

    def test_native_addresses_are_not_tokens(self):
        listings = StonFiExchange(wallet_service()).parse_pools({"pool_list": [{
            "address": "EQNative",
            "token0_address": TON_ADDRESS,
            "token1_address": PTON_ADDRESS,
            "reserve0": "1",
            "reserve1": "1",
        }]})

        assert listings == []
