"""
Tests for token discovery and pool snapshot refresh.
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import TOKEN_FRIENDLY, TOKEN_RAW
from tontrader.db import database
from tontrader.db.models import Exchange
from tontrader.exchanges import ExchangeRegistry
from tontrader.exchanges.base import PoolListing
from tontrader.services import pool_monitor
from tontrader.services.pool_monitor import PoolMonitor

NEW_FRIENDLY = "EQ" + "Nw" * 23
NEW_RAW = "0:" + "cd" * 32
BAD_FRIENDLY = "EQ" + "Bd" * 23
BAD_RAW = "0:" + "ef" * 32
CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def listing(exchange=Exchange.DEDUST, address="EQNewPool", token=NEW_FRIENDLY, native=1000, asset=500_000):
    return PoolListing(exchange, address, token, native * 10**9, asset * 10**9)


def fake_exchange(*listings):
    exchange = AsyncMock()
    exchange.list_pools.return_value = list(listings)
    return exchange


@pytest.fixture
def tonapi():
    client = AsyncMock()
    client.fetch_fiat_price.return_value = Decimal("5")
    client.fetch_token_metadata.return_value = {
        "total_supply": str(10**15),
        "metadata": {"address": NEW_RAW, "symbol": "NEW", "name": "New", "decimals": "9"},
    }
    client.get_first_transaction_time.return_value = CREATED
    return client


async def _token_by_address(address):
    for token in await database.get_all_tokens():
        if token.friendly_address == address:
            return token
    return None


class TestDiscovery:
    """Test discovery of new tokens."""

    async def test_new_token_discovered_with_snapshot(self, db, tonapi):
        registry = ExchangeRegistry({Exchange.DEDUST: fake_exchange(listing())})
        monitor = PoolMonitor(tonapi, registry)

        result = await monitor.run_once()

        assert result.new_tokens == 1
        token = await _token_by_address(NEW_FRIENDLY)
        assert token.raw_address == NEW_RAW
        assert token.symbol == "NEW"
        assert len(token.pools) == 1

        pool = token.pools[0]
        assert pool.price_in_native == Decimal("0.002")
        assert pool.price_in_fiat == Decimal("0.01")
        assert pool.total_liquidity_in_fiat == Decimal("10000")
        assert pool.market_cap_in_fiat == Decimal("10000")

    async def test_cycle_is_idempotent(self, db, tonapi):
        registry = ExchangeRegistry({Exchange.DEDUST: fake_exchange(listing())})
        monitor = PoolMonitor(tonapi, registry)

        await monitor.run_once()
        first = (await _token_by_address(NEW_FRIENDLY)).pools[0]
        second_result = await monitor.run_once()
        second = (await _token_by_address(NEW_FRIENDLY)).pools[0]

        assert second_result.new_tokens == 0
        assert second_result.updated_pools == 1
        assert len(await database.get_all_tokens()) == 1
        for column in ("native_reserve", "asset_reserve", "price_in_native", "price_in_fiat",
                       "total_liquidity_in_fiat", "market_cap_in_fiat"):
            assert getattr(first, column) == getattr(second, column)
        tonapi.fetch_token_metadata.assert_awaited_once()

    async def test_missing_metadata_skips_token(self, db, tonapi):
        tonapi.fetch_token_metadata.return_value = None
        registry = ExchangeRegistry({Exchange.DEDUST: fake_exchange(listing())})

        result = await PoolMonitor(tonapi, registry).run_once()

        assert result.new_tokens == 0
        assert await database.get_all_tokens() == []

    async def test_missing_creation_time_skips_token(self, db, tonapi):
        tonapi.get_first_transaction_time.return_value = None
        registry = ExchangeRegistry({Exchange.DEDUST: fake_exchange(listing())})

        await PoolMonitor(tonapi, registry).run_once()

        assert await database.get_all_tokens() == []

    async def test_known_token_gets_pool_on_new_exchange(self, token, tonapi):
        stonfi_listing = listing(exchange=Exchange.STONFI, address="EQStonPool", token=TOKEN_FRIENDLY)
        registry = ExchangeRegistry({Exchange.STONFI: fake_exchange(stonfi_listing)})

        result = await PoolMonitor(tonapi, registry).run_once()

        assert result.attached_pools == 1
        assert result.new_tokens == 0
        refreshed = await database.get_token_by_id(token.id)
        assert {pool.exchange for pool in refreshed.pools} == {Exchange.DEDUST, Exchange.STONFI}
        assert refreshed.raw_address == TOKEN_RAW
        tonapi.fetch_token_metadata.assert_not_awaited()

    async def test_existing_pool_refreshed_by_address(self, token, tonapi):
        registry = ExchangeRegistry({
            Exchange.DEDUST: fake_exchange(listing(address="EQDedustPool", token=TOKEN_FRIENDLY, native=2000)),
        })

        result = await PoolMonitor(tonapi, registry).run_once()

        assert result.updated_pools == 1
        refreshed = await database.get_token_by_id(token.id)
        assert refreshed.pools[0].native_reserve == Decimal("2000")
        assert refreshed.pools[0].total_liquidity_in_fiat == Decimal("20000")


class TestCycleGuards:
    """Test price abort and the exchange circuit breaker."""

    async def test_no_price_aborts_cycle(self, db, tonapi):
        tonapi.fetch_fiat_price.return_value = None
        exchange = fake_exchange(listing())
        registry = ExchangeRegistry({Exchange.DEDUST: exchange})

        result = await PoolMonitor(tonapi, registry).run_once()

        assert result.aborted
        exchange.list_pools.assert_not_awaited()
        assert await database.get_all_tokens() == []

    async def test_failing_exchange_is_benched_then_probed(self, db, tonapi):
        exchange = AsyncMock()
        exchange.list_pools.side_effect = RuntimeError("listing down")
        registry = ExchangeRegistry({Exchange.DEDUST: exchange})
        monitor = PoolMonitor(tonapi, registry, max_failures=2, cooldown_cycles=2)

        await monitor.run_once()
        await monitor.run_once()
        assert monitor.is_benched(Exchange.DEDUST)

        skipped = [await monitor.run_once(), await monitor.run_once()]
        assert [r.skipped_exchanges for r in skipped] == [1, 1]
        assert exchange.list_pools.await_count == 2

        await monitor.run_once()
        assert exchange.list_pools.await_count == 3

    async def test_one_failing_exchange_does_not_block_others(self, db, tonapi):
        broken = AsyncMock()
        broken.list_pools.side_effect = RuntimeError("listing down")
        registry = ExchangeRegistry({
            Exchange.DEDUST: fake_exchange(listing()),
            Exchange.STONFI: broken,
        })

        result = await PoolMonitor(tonapi, registry).run_once()

        assert result.new_tokens == 1


def metadata_for(raw_by_address):
    def metadata(address):
        return {
            "total_supply": str(10**15),
            "metadata": {"address": raw_by_address[address], "symbol": "TKN", "name": "Token", "decimals": "9"},
        }
    return metadata


class TestPoolIsolation:
    """Test that one bad pool or token leaves the rest of the cycle intact."""

    async def test_other_address_form_resolves_to_known_token(self, token, tonapi):
        """A non-bounceable form of a stored jetton must not be created twice."""
        other_form = "UQ" + TOKEN_FRIENDLY[2:]
        tonapi.fetch_token_metadata.side_effect = metadata_for({other_form: TOKEN_RAW})
        registry = ExchangeRegistry({
            Exchange.DEDUST: fake_exchange(listing(address="EQDedustPool", token=other_form)),
            Exchange.STONFI: fake_exchange(listing(exchange=Exchange.STONFI, address="EQStonPool", token=other_form)),
        })
        monitor = PoolMonitor(tonapi, registry)

        result = await monitor.run_once()

        assert result.new_tokens == 0
        assert result.attached_pools == 1
        assert len(await database.get_all_tokens()) == 1
        refreshed = await database.get_token_by_id(token.id)
        assert {pool.exchange for pool in refreshed.pools} == {Exchange.DEDUST, Exchange.STONFI}

        await monitor.run_once()
        tonapi.fetch_token_metadata.assert_awaited_once()

    async def test_failing_pool_does_not_abort_siblings(self, token, tonapi, monkeypatch):
        real_upsert = pool_monitor.upsert_pool

        async def flaky_upsert(token_id, exchange, address, **values):
            if address == "EQBadPool":
                raise RuntimeError("constraint violated")
            await real_upsert(token_id, exchange, address, **values)

        monkeypatch.setattr(pool_monitor, "upsert_pool", flaky_upsert)
        tonapi.fetch_token_metadata.side_effect = metadata_for({NEW_FRIENDLY: NEW_RAW, BAD_FRIENDLY: BAD_RAW})
        registry = ExchangeRegistry({
            Exchange.DEDUST: fake_exchange(
                listing(address="EQBadPool", token=BAD_FRIENDLY),
                listing(address="EQNewPool", token=NEW_FRIENDLY),
            ),
            Exchange.STONFI: fake_exchange(
                listing(exchange=Exchange.STONFI, address="EQStonPool", token=TOKEN_FRIENDLY),
            ),
        })
        monitor = PoolMonitor(tonapi, registry)

        result = await monitor.run_once()

        assert result.attached_pools == 1
        assert [pool.address for pool in (await _token_by_address(NEW_FRIENDLY)).pools] == ["EQNewPool"]
        assert (await _token_by_address(BAD_FRIENDLY)).pools == []
        refreshed = await database.get_token_by_id(token.id)
        assert {pool.exchange for pool in refreshed.pools} == {Exchange.DEDUST, Exchange.STONFI}

        monkeypatch.setattr(pool_monitor, "upsert_pool", real_upsert)
        second = await monitor.run_once()

        assert second.attached_pools == 1
        assert [pool.address for pool in (await _token_by_address(BAD_FRIENDLY)).pools] == ["EQBadPool"]
