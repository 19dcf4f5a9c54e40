"""
Exchange registry for the TON AMMs the trader routes swaps to.
"""

from typing import Optional

from tontrader.db.models import Exchange
from tontrader.exchanges.base import BaseExchange
from tontrader.exchanges.dedust import DeDustExchange
from tontrader.exchanges.stonfi import StonFiExchange
from tontrader.services.wallet import wallet_service
from tontrader.utils.logging import get_logger

logger = get_logger(__name__)


class ExchangeRegistry:
    """Registry for all supported exchanges."""

    def __init__(self, exchanges: Optional[dict[Exchange, BaseExchange]] = None):
        if exchanges is None:
            exchanges = {
                Exchange.DEDUST: DeDustExchange(wallet_service),
                Exchange.STONFI: StonFiExchange(wallet_service),
            }
        self._exchanges = exchanges

    async def initialize(self) -> None:
        """Initialize all exchanges."""
        for exchange_id, exchange in self._exchanges.items():
            try:
                await exchange.initialize()
                logger.info("Initialized exchange", exchange=exchange_id.value)
            except Exception as e:
                logger.error("Failed to initialize exchange", exchange=exchange_id.value, error=str(e))

    async def close(self) -> None:
        """Close all exchange connections."""
        for exchange in self._exchanges.values():
            try:
                await exchange.close()
            except Exception as e:
                logger.error("Failed to close exchange", error=str(e))

    def get(self, exchange: Exchange) -> BaseExchange:
        """Get an exchange by ID."""
        if exchange not in self._exchanges:
            raise ValueError(f"Unknown exchange: {exchange}")
        return self._exchanges[exchange]

    @property
    def all_exchanges(self) -> list[Exchange]:
        return list(self._exchanges.keys())

    def items(self) -> list[tuple[Exchange, BaseExchange]]:
        return list(self._exchanges.items())


# Singleton instance
exchange_registry = ExchangeRegistry()


def get_exchange(exchange: Exchange) -> BaseExchange:
    """Get an exchange by ID."""
    return exchange_registry.get(exchange)
