# /relaybridge/core/fees.py
# EIP-1559 fee estimation for transactions signed with the local key.
from decimal import Decimal

from web3 import AsyncWeb3

from relaybridge.core.logger import get_logger

log = get_logger(__name__)

FALLBACK_PRIORITY_FEE = int(Decimal("1.5") * 10**9)  # 1.5 gwei


class FeeEstimator:
    def __init__(self, w3: AsyncWeb3):
        self.w3 = w3

    async def get_base_fee(self) -> int:
        latest_block = await self.w3.eth.get_block("latest")
        return latest_block["baseFeePerGas"]

    async def get_priority_fee(self) -> int:
        try:
            return await self.w3.eth.max_priority_fee
        except Exception as e:
            # Some nodes do not implement eth_maxPriorityFeePerGas
            log.warning("MAX_PRIORITY_FEE_RPC_UNSUPPORTED_FALLING_BACK", error=str(e))
            return FALLBACK_PRIORITY_FEE

    async def estimate_eip1559_fees(self, priority_multiplier: Decimal = Decimal("1.2")) -> dict:
        """
        Returns ``maxFeePerGas`` and ``maxPriorityFeePerGas``.

        The max fee leaves room for the base fee to double before inclusion.
        """
        base_fee = await self.get_base_fee()
        priority_fee = await self.get_priority_fee()
        final_priority_fee = int(Decimal(priority_fee) * priority_multiplier)
        return {
            "maxPriorityFeePerGas": final_priority_fee,
            "maxFeePerGas": base_fee * 2 + final_priority_fee,
        }
