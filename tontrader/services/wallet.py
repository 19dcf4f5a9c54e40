"""
Wallet gateway for custodial TON wallets.
Addresses live in the database; balances come from TonApi and every
outgoing message is signed by the custody signer.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from tontrader.db.database import get_user_wallets
from tontrader.db.models import Blockchain, Wallet
from tontrader.services.signer import SignerClient, SignerError, signer_client
from tontrader.services.tonapi import TonApiClient, tonapi_client
from tontrader.utils.logging import LoggerMixin
from tontrader.utils.units import from_nano, to_nano

if TYPE_CHECKING:
    from tontrader.exchanges.base import SwapRequest


class WalletError(Exception):
    """Base exception for wallet operations."""
    pass


class WalletNotFoundError(WalletError):
    """User has no wallet on the requested chain, or does not own it."""
    pass


@dataclass
class WithdrawResult:
    """Result of a TON transfer out of a custodial wallet."""
    success: bool
    message_hash: Optional[str] = None
    error_message: Optional[str] = None


class WalletService(LoggerMixin):
    """Read balances and submit signed messages for user wallets."""

    def __init__(
        self,
        tonapi: Optional[TonApiClient] = None,
        signer: Optional[SignerClient] = None,
    ):
        self.tonapi = tonapi or tonapi_client
        self.signer = signer or signer_client

    async def initialize(self) -> None:
        await self.signer.initialize()
        self.log.info("Wallet service initialized", signer_ready=self.signer.is_ready)

    async def close(self) -> None:
        await self.signer.close()

    async def get_user_wallets(self, user_id: str) -> list[Wallet]:
        return await get_user_wallets(user_id)

    async def get_ton_wallet(self, user_id: str) -> Wallet:
        """
        Raises:
            WalletNotFoundError: user has no TON wallet
        """
        for wallet in await self.get_user_wallets(user_id):
            if wallet.blockchain == Blockchain.TON:
                return wallet
        raise WalletNotFoundError(f"User {user_id} has no TON wallet")

    async def get_balance(self, address: str) -> Optional[Decimal]:
        """TON balance in human units, None when the chain reader is unavailable."""
        raw = await self.tonapi.get_account_balance(address)
        if raw is None:
            return None
        return from_nano(raw)

    async def withdraw(
        self,
        user_id: str,
        from_address: str,
        to_address: str,
        amount: Decimal,
        comment: Optional[str] = None,
    ) -> WithdrawResult:
        """Transfer ``amount`` TON from a user's wallet to ``to_address``."""
        wallets = await self.get_user_wallets(user_id)
        if not any(wallet.address == from_address for wallet in wallets):
            return WithdrawResult(success=False, error_message="Wallet not owned by user")
        if amount <= 0:
            return WithdrawResult(success=False, error_message="Amount must be positive")

        try:
            message_hash = await self.signer.send_transfer(
                from_address,
                to_address,
                to_nano(amount),
                comment=comment,
            )
        except SignerError as e:
            self.log.error("Withdraw failed", user_id=user_id, amount=str(amount), error=str(e))
            return WithdrawResult(success=False, error_message=str(e))

        self.log.info("Withdraw sent", user_id=user_id, amount=str(amount), message_hash=message_hash)
        return WithdrawResult(success=True, message_hash=message_hash)

    async def send_swap(self, user_id: str, request: "SwapRequest") -> str:
        """
        Hand a swap to the signer. Called exactly once per trade decision.

        Raises:
            WalletError: the signer refused or failed to broadcast
        """
        try:
            return await self.signer.send_swap(request)
        except SignerError as e:
            raise WalletError(f"Swap broadcast failed for user {user_id}: {e}") from e


# Singleton instance
wallet_service = WalletService()
