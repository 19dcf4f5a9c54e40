"""
Platform fee maths and collection.

Fee Structure:
- TRANSACTION_FEE_PERCENTAGE of every trade (default 1%)
- Buys: charged up front, the swap is submitted net of fee
- Sells: charged on the estimated TON proceeds once the swap is submitted

Collection is a plain TON transfer to FEE_RECIPIENT_WALLET. Fees at or
below TRANSFER_GAS_AMOUNT are not worth a transfer and are only recorded.
"""

from decimal import Decimal, ROUND_DOWN
from typing import Optional

from tontrader.config import settings
from tontrader.db.database import create_fee
from tontrader.db.models import Fee
from tontrader.services.wallet import WalletService
from tontrader.utils.logging import get_logger
from tontrader.utils.units import quantum, TON_DECIMALS

logger = get_logger(__name__)


def calculate_fee(amount: Decimal, percentage: Optional[Decimal] = None) -> Decimal:
    """
    Calculate the platform fee on a TON amount.

    Args:
        amount: Trade amount in TON
        percentage: Fee fraction, defaults to TRANSACTION_FEE_PERCENTAGE

    Returns:
        Fee in TON, rounded down to nanoTON
    """
    if percentage is None:
        percentage = settings.transaction_fee_percentage
    return (amount * percentage).quantize(quantum(TON_DECIMALS), rounding=ROUND_DOWN)


def calculate_net_amount(amount: Decimal, percentage: Optional[Decimal] = None) -> Decimal:
    """Amount left for the swap after the fee."""
    return amount - calculate_fee(amount, percentage)


async def collect_fee(
    wallet_service: WalletService,
    user_id: str,
    wallet_address: str,
    transaction_id: str,
    fee: Decimal,
) -> Fee:
    """
    Transfer a fee to the recipient wallet and record it.

    The Fee row is written whether or not the transfer went out; ``collected``
    says which. A failed transfer is not retried here.
    """
    collected = False
    if fee > settings.transfer_gas_amount:
        result = await wallet_service.withdraw(
            user_id,
            wallet_address,
            settings.fee_recipient_wallet,
            fee,
            comment=f"fee:{transaction_id}",
        )
        collected = result.success
        if not result.success:
            logger.error(
                "Fee transfer failed, fee left uncollected",
                user_id=user_id,
                transaction_id=transaction_id,
                fee=str(fee),
                error=result.error_message,
            )
    else:
        logger.debug("Fee below transfer gas, recording only", transaction_id=transaction_id, fee=str(fee))

    record = await create_fee(user_id, transaction_id, fee, collected)
    logger.info("Fee recorded", transaction_id=transaction_id, fee=str(fee), collected=collected)
    return record
