"""
Pool monitor: discovers TON-paired jettons and refreshes pool snapshots.

Each cycle reads the TON/USD price once and holds it fixed for every
snapshot computed in that cycle. Listings from all exchanges are fetched
concurrently; an exchange that keeps failing is benched for a number of
cycles and then probed again.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from tontrader.config import settings
from tontrader.db.database import create_token, get_all_tokens, get_token_by_raw_address, upsert_pool
from tontrader.db.models import Exchange, Token
from tontrader.exchanges import ExchangeRegistry, exchange_registry
from tontrader.exchanges.base import PoolListing, deepest_by_token
from tontrader.services.tonapi import TonApiClient, tonapi_client
from tontrader.utils.logging import LoggerMixin
from tontrader.utils.units import TON_DECIMALS, normalize, quantum

ZERO = Decimal("0")
FIAT_PLACES = 2


def _q(value: Decimal, places: int) -> Decimal:
    return value.quantize(quantum(places), rounding=ROUND_HALF_UP)


def compute_pool_snapshot(
    native_reserve: int,
    asset_reserve: int,
    decimals: int,
    total_supply: Any,
    fiat_price: Decimal,
) -> dict[str, Decimal]:
    """
    Derive a pool snapshot from raw reserves.

    Args:
        native_reserve: TON reserve in nanoTON
        asset_reserve: Jetton reserve in raw units
        decimals: Jetton decimals
        total_supply: Jetton total supply in raw units
        fiat_price: TON price in USD for this cycle

    Returns:
        Column values for a Pool row. Prices are zero when the jetton
        reserve is empty.
    """
    native = normalize(native_reserve, TON_DECIMALS)
    asset = normalize(asset_reserve, decimals)
    supply = normalize(Decimal(total_supply), decimals)

    if asset > 0:
        price_in_native = _q(native / asset, TON_DECIMALS)
    else:
        price_in_native = _q(ZERO, TON_DECIMALS)
    price_in_fiat = _q(price_in_native * fiat_price, TON_DECIMALS)

    return {
        "native_reserve": _q(native, TON_DECIMALS),
        "asset_reserve": _q(asset, decimals),
        "price_in_native": price_in_native,
        "price_in_fiat": price_in_fiat,
        "total_liquidity_in_fiat": _q(native * fiat_price * 2, FIAT_PLACES),
        "market_cap_in_fiat": _q(price_in_fiat * supply, FIAT_PLACES),
    }


@dataclass
class MonitorCycleResult:
    """Counters for one monitoring cycle."""
    new_tokens: int = 0
    updated_pools: int = 0
    attached_pools: int = 0
    skipped_exchanges: int = 0
    aborted: bool = False


class PoolMonitor(LoggerMixin):
    """Keeps Token and Pool rows in step with exchange listings."""

    def __init__(
        self,
        tonapi: Optional[TonApiClient] = None,
        registry: Optional[ExchangeRegistry] = None,
        max_failures: Optional[int] = None,
        cooldown_cycles: Optional[int] = None,
    ):
        self.tonapi = tonapi or tonapi_client
        self.registry = registry or exchange_registry
        self.max_failures = max_failures or settings.exchange_max_failures
        self.cooldown_cycles = cooldown_cycles or settings.exchange_cooldown_cycles

        self._failures: dict[Exchange, int] = {}
        self._cooldowns: dict[Exchange, int] = {}
        # Listing address forms that resolved to a known jetton master
        self._aliases: dict[str, str] = {}

    # ===================
    # Circuit breaker
    # ===================

    def is_benched(self, exchange: Exchange) -> bool:
        return self._cooldowns.get(exchange, 0) > 0

    def _admit(self, exchange: Exchange) -> bool:
        """Whether to query ``exchange`` this cycle, consuming a cooldown cycle if benched."""
        remaining = self._cooldowns.get(exchange, 0)
        if remaining > 0:
            self._cooldowns[exchange] = remaining - 1
            self.log.info("Exchange benched, skipping listing", exchange=exchange.value, cycles_left=remaining - 1)
            return False
        return True

    def _record_success(self, exchange: Exchange) -> None:
        self._failures[exchange] = 0

    def _record_failure(self, exchange: Exchange) -> None:
        failures = self._failures.get(exchange, 0) + 1
        self._failures[exchange] = failures
        if failures >= self.max_failures:
            self._cooldowns[exchange] = self.cooldown_cycles
            self.log.error(
                "Exchange failing repeatedly, benching",
                exchange=exchange.value,
                failures=failures,
                cooldown_cycles=self.cooldown_cycles,
            )

    async def _fetch_listings(self, exchange_id: Exchange) -> list[PoolListing]:
        exchange = self.registry.get(exchange_id)
        try:
            listings = await exchange.list_pools()
        except Exception as e:
            self.log.error("Failed to fetch pool listing", exchange=exchange_id.value, error=str(e))
            self._record_failure(exchange_id)
            return []

        self._record_success(exchange_id)
        return listings

    # ===================
    # Cycle
    # ===================

    async def run_once(self) -> MonitorCycleResult:
        """Run one monitoring cycle."""
        started = time.monotonic()
        result = MonitorCycleResult()

        fiat_price = await self.tonapi.fetch_fiat_price("TON")
        if not fiat_price:
            self.log.error("TON price unavailable, aborting monitoring cycle")
            result.aborted = True
            return result

        exchanges = []
        for exchange_id in self.registry.all_exchanges:
            if self._admit(exchange_id):
                exchanges.append(exchange_id)
            else:
                result.skipped_exchanges += 1

        fetched = await asyncio.gather(*(self._fetch_listings(e) for e in exchanges))
        listings_by_exchange = dict(zip(exchanges, fetched))

        tokens = await get_all_tokens()
        tokens_by_address: dict[str, Token] = {}
        known_ids: set[str] = set()
        attached: set[tuple[str, Exchange]] = set()
        for token in tokens:
            known_ids.add(token.id)
            tokens_by_address[token.friendly_address] = token
            tokens_by_address[token.raw_address] = token
            for pool in token.pools:
                attached.add((token.id, pool.exchange))
        for alias, raw_address in self._aliases.items():
            if raw_address in tokens_by_address:
                tokens_by_address[alias] = tokens_by_address[raw_address]

        for exchange_id, listings in listings_by_exchange.items():
            by_pool_address = {listing.address: listing for listing in listings}

            # Refresh pools we already track, by pool address
            for token in tokens:
                for pool in token.pools:
                    if pool.exchange != exchange_id:
                        continue
                    listing = by_pool_address.get(pool.address)
                    if listing is None:
                        continue
                    try:
                        await self._store_snapshot(token, listing, fiat_price)
                    except Exception as e:
                        self.log.error("Failed to refresh pool", pool=pool.address, error=str(e), exc_info=True)
                        continue
                    result.updated_pools += 1

            for token_address, listing in deepest_by_token(listings).items():
                try:
                    token = tokens_by_address.get(token_address)
                    if token is None:
                        token = await self._discover_token(token_address)
                        if token is None:
                            continue
                        tokens_by_address[token_address] = token
                        tokens_by_address[token.raw_address] = token
                        if token.id not in known_ids:
                            known_ids.add(token.id)
                            result.new_tokens += 1
                            await self._store_snapshot(token, listing, fiat_price)
                            attached.add((token.id, exchange_id))
                            continue

                    if (token.id, exchange_id) in attached:
                        continue
                    await self._store_snapshot(token, listing, fiat_price)
                    attached.add((token.id, exchange_id))
                    result.attached_pools += 1
                except Exception as e:
                    self.log.error(
                        "Failed to process pool listing",
                        exchange=exchange_id.value,
                        token=token_address,
                        pool=listing.address,
                        error=str(e),
                        exc_info=True,
                    )

        self.log.info(
            "Pool monitoring cycle completed",
            new_tokens=result.new_tokens,
            updated_pools=result.updated_pools,
            attached_pools=result.attached_pools,
            skipped_exchanges=result.skipped_exchanges,
            fiat_price=str(fiat_price),
            duration=round(time.monotonic() - started, 3),
        )
        return result

    async def _store_snapshot(self, token: Token, listing: PoolListing, fiat_price: Decimal) -> None:
        snapshot = compute_pool_snapshot(
            listing.native_reserve,
            listing.asset_reserve,
            token.decimals,
            token.total_supply,
            fiat_price,
        )
        await upsert_pool(token.id, listing.exchange, listing.address, **snapshot)

    async def _discover_token(self, token_address: str) -> Optional[Token]:
        """
        Resolve a listed jetton address to a Token, creating it from chain metadata.

        An address form that resolves to an already stored jetton master returns
        that token. None when metadata or the creation time is missing.
        """
        data = await self.tonapi.fetch_token_metadata(token_address)
        if not data:
            self.log.warning("Token metadata unavailable, skipping pool", token=token_address)
            return None

        created_at: Optional[datetime] = await self.tonapi.get_first_transaction_time(token_address)
        if created_at is None:
            self.log.warning("Token creation time unavailable, skipping pool", token=token_address)
            return None

        try:
            metadata = data["metadata"]
            raw_address = metadata["address"]
            decimals = int(metadata.get("decimals", TON_DECIMALS))
            total_supply = Decimal(str(data.get("total_supply", "0")))
        except (KeyError, AttributeError, TypeError, ValueError, ArithmeticError) as e:
            self.log.warning("Malformed token metadata, skipping pool", token=token_address, error=str(e))
            return None

        existing = await get_token_by_raw_address(raw_address)
        if existing is not None:
            self._aliases[token_address] = raw_address
            self.log.info("Listing address resolves to known token", token=token_address, raw_address=raw_address)
            return existing

        token = await create_token(
            raw_address=raw_address,
            friendly_address=token_address,
            symbol=metadata.get("symbol") or "",
            name=metadata.get("name") or "",
            decimals=decimals,
            total_supply=total_supply,
            created_at=created_at,
            image=metadata.get("image"),
            description=metadata.get("description"),
        )
        self.log.info("New token discovered", symbol=token.symbol, token=token_address)
        return token
