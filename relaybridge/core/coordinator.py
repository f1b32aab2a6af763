# /relaybridge/core/coordinator.py
# Ties ledger, attestation sources, signer chain and executor into the
# request-driven pipeline operations.
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Tuple

import redis.asyncio as aioredis
from web3 import Web3

from relaybridge.adapters.oracle import OracleAttestationSource, OracleState
from relaybridge.adapters.receipt import MessageEnvelope, ReceiptAttestationSource, new_receipt_nonce
from relaybridge.core.config import Settings
from relaybridge.core.errors import AttestationFailed, BridgeError, NotFoundError, ValidationError
from relaybridge.core.executor import RedemptionExecutor, ContractCall, receive_attested_call, receive_bridged_call
from relaybridge.core.ledger import DepositLedger, JsonFileDepositLedger
from relaybridge.core.ledger_redis import RedisDepositLedger
from relaybridge.core.logger import get_logger
from relaybridge.core.models import (
    Attestation,
    BridgePath,
    Deposit,
    DepositCandidate,
    OracleDescriptor,
    OracleRedeemRequest,
    ReceiptAttestation,
    ReceiptDescriptor,
    ReceiptRedeemRequest,
    RedemptionResult,
)
from relaybridge.core.rpc import NetworkRegistry
from relaybridge.core.signer import build_signer_chain
from relaybridge.core.validation import (
    require_address,
    require_chain_id,
    require_hex,
    require_nonce,
    require_positive_amount,
    require_tx_hash,
)

log = get_logger(__name__)


def as_path(path: BridgePath | str) -> BridgePath:
    try:
        return BridgePath(path)
    except ValueError:
        raise ValidationError(f"Unknown bridge path: {path!r}")


class PipelineCoordinator:
    """
    Entry point for every pipeline operation. Descriptors are dispatched to
    their attestation source here and nowhere else.

    Concurrent redemptions of the same (path, natural key) inside one process
    share a single in-flight call. Across processes the destination
    contract's replay guard decides.
    """

    def __init__(
        self,
        ledgers: Dict[BridgePath, DepositLedger],
        oracle: OracleAttestationSource,
        receipts: ReceiptAttestationSource,
        executor: RedemptionExecutor,
        *,
        network: str,
        vault_address: str | None,
        receipt_source_chain_id: int = 1918988905,
        receipt_destination_chain_id: int = 84532,
        confirmation_timeout: float | None = None,
    ):
        self.ledgers = ledgers
        self.oracle = oracle
        self.receipts = receipts
        self.executor = executor
        self.network = network
        self.vault_address = vault_address
        self.receipt_source_chain_id = receipt_source_chain_id
        self.receipt_destination_chain_id = receipt_destination_chain_id
        self.confirmation_timeout = confirmation_timeout
        self._inflight: Dict[Tuple[BridgePath, str], asyncio.Future] = {}

    @property
    def active_signer(self) -> str | None:
        return getattr(self.executor.signer, "active_name", None)

    def ledger(self, path: BridgePath | str) -> DepositLedger:
        return self.ledgers[as_path(path)]

    # --- Ledger operations ---

    async def notify_deposit(self, path: BridgePath | str, candidate: DepositCandidate) -> Deposit:
        path = as_path(path)
        require_address(candidate.user_address)
        require_positive_amount(candidate.amount)
        if path is BridgePath.ORACLE:
            require_tx_hash(candidate.natural_key, "natural_key")
            if candidate.source.domain is None:
                raise ValidationError("Oracle deposits need the source domain")
        else:
            require_nonce(candidate.natural_key)
        if candidate.source_tx_hash:
            require_tx_hash(candidate.source_tx_hash, "source_tx_hash")
        return await self.ledger(path).insert(candidate)

    async def get_deposit(self, path: BridgePath | str, deposit_id: str) -> Deposit:
        return await self.ledger(path).get_by_id(deposit_id)

    async def find_deposit(self, path: BridgePath | str, natural_key: str, user: str | None = None) -> Deposit:
        if user is not None:
            require_address(user)
        return await self.ledger(path).find_by_natural_key(natural_key, user)

    async def get_unredeemed(self, path: BridgePath | str, user: str) -> List[Deposit]:
        require_address(user)
        return await self.ledger(path).list_unredeemed(user)

    async def get_all_unredeemed(self, path: BridgePath | str) -> List[Deposit]:
        return await self.ledger(path).list_unredeemed()

    async def attach_attestation(self, path: BridgePath | str, deposit_id: str, payload: Attestation) -> Deposit:
        path = as_path(path)
        if payload.kind != path.value:
            raise ValidationError(f"{payload.kind} attestation cannot be attached to a {path.value} deposit")
        if path is BridgePath.ORACLE:
            require_hex(payload.message, "message")
            require_hex(payload.proof, "proof")
        else:
            require_hex(payload.signature, "signature")
        return await self.ledger(path).attach_attestation(deposit_id, payload)

    async def mark_redeemed(self, path: BridgePath | str, deposit_id: str, redeem_tx_hash: str) -> Deposit:
        require_tx_hash(redeem_tx_hash, "redeem_tx_hash")
        return await self.ledger(path).consume_and_delete(deposit_id, redeem_tx_hash)

    # --- Attestations ---

    def _check_descriptor(self, descriptor: OracleDescriptor | ReceiptDescriptor):
        if isinstance(descriptor, OracleDescriptor):
            require_tx_hash(descriptor.tx_hash)
            if descriptor.source_domain < 0:
                raise ValidationError("source_domain must be non-negative")
        else:
            require_positive_amount(descriptor.amount)
            require_nonce(descriptor.nonce)
            require_chain_id(descriptor.source_chain_id)
            require_chain_id(descriptor.destination_chain_id, "destination_chain_id")
            require_address(descriptor.destination_contract, "destination_contract")

    async def check_attestation(self, descriptor: OracleDescriptor | ReceiptDescriptor) -> Attestation | None:
        """One read. ``None`` while the oracle is still pending."""
        self._check_descriptor(descriptor)
        if isinstance(descriptor, ReceiptDescriptor):
            return await self.receipts.acquire(descriptor)
        status = await self.oracle.check(descriptor)
        if status.state is OracleState.FAILED:
            raise AttestationFailed(f"Attestation failed for {descriptor.tx_hash}: {status.detail}")
        return status.attestation if status.state is OracleState.COMPLETE else None

    async def poll_attestation(
        self,
        descriptor: OracleDescriptor | ReceiptDescriptor,
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
        deadline: float | None = None,
    ) -> Attestation:
        self._check_descriptor(descriptor)
        if isinstance(descriptor, ReceiptDescriptor):
            # signing is immediate; nothing to wait for
            return await self.receipts.acquire(descriptor)
        return await self.oracle.poll(descriptor, max_attempts=max_attempts, interval=interval, deadline=deadline)

    async def get_or_poll_attestation(
        self,
        descriptor: OracleDescriptor | ReceiptDescriptor,
        *,
        deposit_id: str | None = None,
        deadline: float | None = None,
    ) -> Attestation:
        """
        Returns the attestation already stored on ``deposit_id`` if there is
        one, otherwise acquires it from the matching source and stores it.
        """
        path = as_path(descriptor.path)
        if deposit_id is not None:
            deposit = await self.ledger(path).get_by_id(deposit_id)
            if deposit.attestation is not None and deposit.attestation.kind == path.value:
                return deposit.attestation

        attestation = await self.poll_attestation(descriptor, deadline=deadline)
        if deposit_id is not None:
            await self.ledger(path).attach_attestation(deposit_id, attestation)
        return attestation

    def receipt_descriptor(self, amount: int, nonce: int, source_chain_id: int | None = None) -> ReceiptDescriptor:
        return ReceiptDescriptor(
            amount=amount,
            nonce=nonce,
            source_chain_id=self.receipt_source_chain_id if source_chain_id is None else source_chain_id,
            destination_chain_id=self.receipt_destination_chain_id,
            destination_contract=self._vault(),
        )

    async def issue_receipt(
        self, amount: int, nonce: int | None = None, source_chain_id: int | None = None
    ) -> Tuple[ReceiptDescriptor, ReceiptAttestation]:
        """Sign a receipt for ``amount``; a fresh nonce is generated when none is given."""
        amount = require_positive_amount(amount)
        nonce = new_receipt_nonce() if nonce is None else require_nonce(nonce)
        descriptor = self.receipt_descriptor(amount, nonce, source_chain_id)
        self._check_descriptor(descriptor)
        return descriptor, await self.receipts.acquire(descriptor)

    # --- Redemption ---

    def _vault(self) -> str:
        if not self.vault_address:
            raise BridgeError("DESTINATION_VAULT_ADDRESS not configured")
        return self.vault_address

    async def verify_and_redeem(
        self, path: BridgePath | str, request: OracleRedeemRequest | ReceiptRedeemRequest
    ) -> RedemptionResult:
        path = as_path(path)
        if path is BridgePath.ORACLE:
            if not isinstance(request, OracleRedeemRequest):
                raise ValidationError("Oracle redemption needs message and proof")
            return await self._redeem_oracle(request)
        if not isinstance(request, ReceiptRedeemRequest):
            raise ValidationError("Receipt redemption needs amount, nonce, source chain id and signature")
        return await self._redeem_receipt(request)

    async def _redeem_oracle(self, request: OracleRedeemRequest) -> RedemptionResult:
        require_hex(request.message, "message")
        require_hex(request.proof, "proof")
        if request.natural_key is not None:
            require_tx_hash(request.natural_key, "natural_key")
        if request.user_address is not None:
            require_address(request.user_address)
        vault = self._vault()

        flight_key = request.natural_key.lower() if request.natural_key else Web3.keccak(hexstr=request.message).hex()
        call = receive_bridged_call(request.message, request.proof)

        async def run() -> RedemptionResult:
            tx_hash = await self._submit(vault, call)
            consumed = None
            if request.natural_key:
                consumed = await self._consume(BridgePath.ORACLE, request.natural_key, request.user_address, tx_hash)
            return RedemptionResult(tx_hash=tx_hash, consumed=consumed)

        return await self._single_flight((BridgePath.ORACLE, flight_key), run)

    async def _redeem_receipt(self, request: ReceiptRedeemRequest) -> RedemptionResult:
        amount = require_positive_amount(request.amount)
        nonce = require_nonce(request.nonce)
        require_chain_id(request.source_chain_id)
        require_hex(request.signature, "signature")
        if request.user_address is not None:
            require_address(request.user_address)

        descriptor = self.receipt_descriptor(amount, nonce, request.source_chain_id)
        await self.receipts.verify(descriptor, request.signature)
        call = receive_attested_call(amount, nonce, request.source_chain_id, request.signature)

        async def run() -> RedemptionResult:
            tx_hash = await self._submit(descriptor.destination_contract, call)
            consumed = await self._consume(BridgePath.RECEIPT, str(nonce), request.user_address, tx_hash)
            return RedemptionResult(tx_hash=tx_hash, consumed=consumed)

        return await self._single_flight((BridgePath.RECEIPT, str(nonce)), run)

    async def _submit(self, vault: str, call: ContractCall) -> str:
        if self.confirmation_timeout:
            tx_hash, _ = await self.executor.redeem_and_wait(
                self.network, vault, call, timeout=self.confirmation_timeout
            )
            return tx_hash
        return await self.executor.redeem(self.network, vault, call)

    async def _consume(self, path: BridgePath, natural_key: str, user: str | None, tx_hash: str) -> Deposit | None:
        """Ledger bookkeeping after a successful redemption. A missing record is fine."""
        ledger = self.ledger(path)
        try:
            deposit = await ledger.find_by_natural_key(natural_key, user)
            return await ledger.consume_and_delete(deposit.id, tx_hash)
        except NotFoundError:
            log.info("NO_LEDGER_RECORD_FOR_REDEMPTION", path=path.value, natural_key=natural_key, tx_hash=tx_hash)
            return None
        except Exception as e:
            # the redemption is on-chain already; the caller still needs the tx hash
            log.error("LEDGER_CONSUME_FAILED_AFTER_REDEMPTION", path=path.value, natural_key=natural_key,
                      tx_hash=tx_hash, error=str(e))
            return None

    async def _single_flight(
        self, key: Tuple[BridgePath, str], factory: Callable[[], Awaitable[RedemptionResult]]
    ) -> RedemptionResult:
        existing = self._inflight.get(key)
        if existing is not None:
            log.info("REDEMPTION_ALREADY_IN_FLIGHT", path=key[0].value, natural_key=key[1])
            return await asyncio.shield(existing)
        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def close(self):
        await self.oracle.close()
        # redis ledgers share one client
        seen = set()
        for ledger in self.ledgers.values():
            client = getattr(ledger, "redis", None)
            if client is None or id(client) in seen:
                continue
            seen.add(id(client))
            await ledger.close()


def build_ledgers(settings: Settings) -> Dict[BridgePath, DepositLedger]:
    if settings.LEDGER_BACKEND == "redis":
        client = aioredis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        return {path: RedisDepositLedger(path, client) for path in BridgePath}
    return {path: JsonFileDepositLedger(path, Path(settings.DATA_DIR)) for path in BridgePath}


def build_coordinator(settings: Settings) -> PipelineCoordinator:
    networks = NetworkRegistry(
        settings.RPC_URLS,
        timeout=settings.RPC_TIMEOUT_SECONDS,
        poa_networks=settings.POA_NETWORKS,
    )
    signer = build_signer_chain(settings, networks)
    oracle = OracleAttestationSource(
        settings.ORACLE_BASE_URL,
        http_timeout=settings.ORACLE_HTTP_TIMEOUT_SECONDS,
        poll_interval=settings.ORACLE_POLL_INTERVAL_SECONDS,
        max_attempts=settings.ORACLE_POLL_MAX_ATTEMPTS,
    )
    receipts = ReceiptAttestationSource(
        signer,
        envelope=MessageEnvelope(settings.RECEIPT_MESSAGE_ENVELOPE),
        trusted_signer=settings.TRUSTED_SIGNER_ADDRESS,
    )
    executor = RedemptionExecutor(
        networks,
        signer,
        gas_multiplier=settings.GAS_LIMIT_MULTIPLIER,
        rpc_timeout=settings.RPC_TIMEOUT_SECONDS,
    )
    log.info("PIPELINE_CONFIGURED", network=settings.DESTINATION_NETWORK, ledger=settings.LEDGER_BACKEND,
             signers=settings.SIGNER_ORDER, envelope=settings.RECEIPT_MESSAGE_ENVELOPE)
    return PipelineCoordinator(
        build_ledgers(settings),
        oracle,
        receipts,
        executor,
        network=settings.DESTINATION_NETWORK,
        vault_address=settings.DESTINATION_VAULT_ADDRESS,
        receipt_source_chain_id=settings.RECEIPT_SOURCE_CHAIN_ID,
        receipt_destination_chain_id=settings.RECEIPT_DESTINATION_CHAIN_ID,
        confirmation_timeout=settings.CONFIRMATION_TIMEOUT_SECONDS or None,
    )
