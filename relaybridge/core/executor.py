# /relaybridge/core/executor.py
# Builds, estimates and submits the destination redemption call.
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, List, Tuple

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from relaybridge.abis import UNIFIED_VAULT_ABI
from relaybridge.core.errors import (
    BridgeError,
    ConfirmationTimeout,
    GasEstimationFailed,
    SignerUnavailable,
    SubmissionFailed,
    TransactionReverted,
    ValidationError,
)
from relaybridge.core.logger import get_logger, REDEMPTIONS_SUBMITTED, REDEMPTION_FAILURES
from relaybridge.core.rpc import NetworkRegistry
from relaybridge.core.signer import RemoteSigner, TxRequest

log = get_logger(__name__)

# Offline instance, only used for ABI encoding.
_CODEC = Web3()


class RedemptionStage(str, Enum):
    BUILDING = "building"
    ESTIMATING = "estimating"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


@dataclass(frozen=True)
class ContractCall:
    function: str
    args: Tuple[Any, ...]
    abi: List[dict] = field(default_factory=lambda: UNIFIED_VAULT_ABI)

    def encode(self, address: str) -> str:
        contract = _CODEC.eth.contract(address=Web3.to_checksum_address(address), abi=self.abi)
        return contract.encode_abi(self.function, args=list(self.args))


def receive_bridged_call(message: str, proof: str) -> ContractCall:
    return ContractCall("receiveBridgedUSDC", (Web3.to_bytes(hexstr=message), Web3.to_bytes(hexstr=proof)))


def receive_attested_call(amount: int, nonce: int, source_chain_id: int, signature: str) -> ContractCall:
    return ContractCall("receiveAttested", (amount, nonce, source_chain_id, Web3.to_bytes(hexstr=signature)))


def revert_reason(exc: Exception) -> str:
    """The provider's revert text, untouched."""
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args and isinstance(exc.args[0], dict) and "message" in exc.args[0]:
        return str(exc.args[0]["message"])
    return str(exc) or exc.__class__.__name__


@dataclass
class RedemptionAttempt:
    network: str
    contract: str
    function: str
    stage: RedemptionStage = RedemptionStage.BUILDING
    gas_estimate: int | None = None
    gas_limit: int | None = None
    tx_hash: str | None = None
    error: str | None = None

    def advance(self, stage: RedemptionStage):
        self.stage = stage
        log.debug("REDEMPTION_STAGE", network=self.network, function=self.function, stage=stage.value)

    def fail(self, error: Exception):
        failed_at = self.stage
        self.error = str(error)
        self.stage = RedemptionStage.FAILED
        REDEMPTION_FAILURES.labels(self.network, failed_at.value).inc()
        log.error("REDEMPTION_FAILED", network=self.network, contract=self.contract,
                  function=self.function, stage=failed_at.value, error=self.error)


class RedemptionExecutor:
    """
    One redemption attempt: BUILDING -> ESTIMATING -> SUBMITTING -> SUBMITTED,
    or FAILED from any step. No retries happen here; after a failed estimate
    the deposit may already be consumed on-chain.
    """

    def __init__(
        self,
        networks: NetworkRegistry,
        signer: RemoteSigner,
        *,
        gas_multiplier: Decimal = Decimal("1.20"),
        rpc_timeout: float = 30.0,
    ):
        self.networks = networks
        self.signer = signer
        self.gas_multiplier = Decimal(gas_multiplier)
        self.rpc_timeout = rpc_timeout

    async def redeem(self, network: str, contract_address: str, call: ContractCall) -> str:
        attempt = await self.attempt(network, contract_address, call)
        return attempt.tx_hash

    async def attempt(self, network: str, contract_address: str, call: ContractCall) -> RedemptionAttempt:
        """
        Runs one redemption and returns its record. On failure the raised
        error carries the failed record as ``attempt``.
        """
        attempt = RedemptionAttempt(network=network, contract=contract_address, function=call.function)
        try:
            await self._run(attempt, call)
        except BridgeError as e:
            attempt.fail(e)
            e.attempt = attempt
            raise
        return attempt

    async def _run(self, attempt: RedemptionAttempt, call: ContractCall) -> str:
        w3 = self.networks.get_provider(attempt.network)
        try:
            to = Web3.to_checksum_address(attempt.contract)
            data = call.encode(to)
        except (Web3Exception, TypeError, ValueError) as e:
            raise ValidationError(f"Cannot encode {call.function} for {attempt.contract}: {e}") from e
        sender = await self.signer.address()

        attempt.advance(RedemptionStage.ESTIMATING)
        try:
            estimate = await asyncio.wait_for(
                w3.eth.estimate_gas({"from": sender, "to": to, "data": data}),
                timeout=self.rpc_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GasEstimationFailed(f"Gas estimation timed out after {self.rpc_timeout}s") from e
        except Exception as e:
            raise GasEstimationFailed(revert_reason(e)) from e
        attempt.gas_estimate = int(estimate)
        attempt.gas_limit = int(Decimal(int(estimate)) * self.gas_multiplier)

        attempt.advance(RedemptionStage.SUBMITTING)
        try:
            tx_hash = await asyncio.wait_for(
                self.signer.submit_transaction(attempt.network, TxRequest(to=to, data=data, gas=attempt.gas_limit)),
                timeout=self.rpc_timeout,
            )
        except SignerUnavailable:
            raise
        except asyncio.TimeoutError as e:
            raise SubmissionFailed(f"Submission timed out after {self.rpc_timeout}s") from e
        except Exception as e:
            raise SubmissionFailed(str(e) or e.__class__.__name__) from e

        attempt.tx_hash = tx_hash
        attempt.advance(RedemptionStage.SUBMITTED)
        REDEMPTIONS_SUBMITTED.labels(attempt.network).inc()
        log.info("REDEMPTION_SUBMITTED", network=attempt.network, contract=to, function=call.function,
                 tx_hash=tx_hash, gas_estimate=attempt.gas_estimate, gas_limit=attempt.gas_limit)
        return tx_hash

    async def redeem_and_wait(
        self, network: str, contract_address: str, call: ContractCall, *, timeout: float = 120.0
    ) -> Tuple[str, Any]:
        """Submit, then block for the receipt for at most ``timeout`` seconds."""
        tx_hash = await self.redeem(network, contract_address, call)
        w3 = self.networks.get_provider(network)
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(f"Transaction {tx_hash} not mined within {timeout}s") from e
        if receipt["status"] != 1:
            raise TransactionReverted(f"Transaction {tx_hash} reverted on-chain")
        log.info("REDEMPTION_CONFIRMED", network=network, tx_hash=tx_hash, block=receipt.get("blockNumber"))
        return tx_hash, receipt
