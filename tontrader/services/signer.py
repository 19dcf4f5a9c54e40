"""
Custody signer REST client.

The signer holds wallet keys, builds TON messages and broadcasts them.
This process only ever sends it intents (transfer, swap) by wallet address.
Broadcast calls are never retried: a repeated call is a repeated payment.
"""

from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Optional

import httpx

from tontrader.config import settings
from tontrader.utils.logging import get_logger

if TYPE_CHECKING:
    from tontrader.exchanges.base import SwapRequest

logger = get_logger(__name__)


class SignerError(Exception):
    """Signer rejected or failed to broadcast a message."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(f"[signer] {message}")


class SignerClient:
    """Async HTTP client for the custody signer."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url or settings.signer_api_url
        self._api_key = api_key if api_key is not None else settings.signer_api_key
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=60.0,
            headers=headers,
            transport=self._transport,
        )

    @property
    def is_ready(self) -> bool:
        return self._http is not None and not self._http.is_closed

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Internal request helper
    # ------------------------------------------------------------------

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.is_ready:
            raise SignerError("Signer client not initialized")

        try:
            response = await self._http.post(path, json=body)
        except httpx.TransportError as e:
            raise SignerError(f"Transport error: {e}")

        if response.status_code >= 400:
            logger.error(
                "Signer API error",
                status=response.status_code,
                path=path,
                body=response.text[:500],
            )
            raise SignerError(f"HTTP {response.status_code}", response.status_code)

        try:
            return response.json()
        except ValueError:
            raise SignerError("Signer returned a non-JSON body", response.status_code)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_transfer(
        self,
        wallet_address: str,
        to_address: str,
        amount_nano: int,
        comment: Optional[str] = None,
    ) -> str:
        """Send TON from a custodial wallet. Returns the external message hash."""
        data = await self._post(f"/v1/wallets/{wallet_address}/transfer", {
            "to": to_address,
            "amount": str(amount_nano),
            "comment": comment,
            "rpc_url": settings.ton_rpc_url,
        })
        return _message_hash(data)

    async def send_swap(self, request: "SwapRequest") -> str:
        """Build, sign and broadcast a swap. Returns the external message hash."""
        body = asdict(request)
        body["exchange"] = request.exchange.value
        for key in ("offer_amount", "min_ask_amount", "gas_amount"):
            body[key] = str(body[key])
        body["rpc_url"] = settings.ton_rpc_url

        data = await self._post(f"/v1/wallets/{request.wallet_address}/swap", body)
        return _message_hash(data)


def _message_hash(data: dict[str, Any]) -> str:
    message_hash = data.get("message_hash") if isinstance(data, dict) else None
    if not message_hash:
        raise SignerError("Signer response missing message_hash")
    return message_hash


# Singleton instance
signer_client = SignerClient()
