# /relaybridge/core/signer.py
# Remote signers: custody-service backed (CDP server wallet) and raw local key,
# tried in order at first use.
import asyncio
import base64
import binascii
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Protocol, Sequence, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from relaybridge.core.config import Settings
from relaybridge.core.errors import SignerUnavailable
from relaybridge.core.fees import FeeEstimator
from relaybridge.core.logger import get_logger, SIGNER_FALLBACKS
from relaybridge.core.rpc import NetworkRegistry

log = get_logger(__name__)

_HEX_KEY = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class TxRequest:
    to: str
    data: str = "0x"
    value: int = 0
    gas: int | None = None


class RemoteSigner(Protocol):
    name: str

    async def initialize(self) -> None: ...
    async def address(self) -> str: ...
    async def sign_message(self, message: str | bytes) -> str: ...
    async def submit_transaction(self, network: str, tx: TxRequest) -> str: ...


def decode_private_key(raw: str) -> str:
    """Accepts a 32-byte key as hex (with or without 0x) or base64."""
    value = raw.strip()
    hex_key = value if value.startswith("0x") else "0x" + value
    if _HEX_KEY.match(hex_key):
        return hex_key
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise SignerUnavailable("Invalid PRIVATE_KEY format - must be hex (64 chars) or base64")
    if len(decoded) < 32:
        raise SignerUnavailable("Invalid PRIVATE_KEY format - base64 key shorter than 32 bytes")
    return "0x" + decoded[:32].hex()


class LocalKeySigner:
    """Signs with a raw key and broadcasts through the network's JSON-RPC endpoint."""

    name = "local"

    def __init__(self, private_key: str | None, networks: NetworkRegistry):
        self._private_key = private_key
        self.networks = networks
        self._account: LocalAccount | None = None
        self._nonce_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        if self._account is not None:
            return
        if not self._private_key:
            raise SignerUnavailable("PRIVATE_KEY not configured")
        self._account = Account.from_key(decode_private_key(self._private_key))
        log.info("LOCAL_SIGNER_INITIALIZED", address=self._account.address)

    async def address(self) -> str:
        await self.initialize()
        return self._account.address

    async def sign_message(self, message: str | bytes) -> str:
        await self.initialize()
        signable = encode_defunct(text=message) if isinstance(message, str) else encode_defunct(primitive=message)
        signed = self._account.sign_message(signable)
        return Web3.to_hex(signed.signature)

    async def submit_transaction(self, network: str, tx: TxRequest) -> str:
        await self.initialize()
        w3 = self.networks.get_provider(network)
        # pending-nonce read and broadcast must not interleave for one sender
        async with self._nonce_locks[network]:
            params: Dict[str, Any] = {
                "from": self._account.address,
                "to": Web3.to_checksum_address(tx.to),
                "data": tx.data,
                "value": tx.value,
                "nonce": await w3.eth.get_transaction_count(self._account.address, "pending"),
                "chainId": await w3.eth.chain_id,
            }
            params["gas"] = tx.gas if tx.gas is not None else await w3.eth.estimate_gas(params)
            params.update(await FeeEstimator(w3).estimate_eip1559_fees())
            signed = self._account.sign_transaction(params)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        log.info("LOCAL_SIGNER_TX_BROADCASTED", network=network, tx_hash=Web3.to_hex(tx_hash), nonce=params["nonce"])
        return Web3.to_hex(tx_hash)


def _default_cdp_client(**credentials):
    from cdp import CdpClient

    return CdpClient(**credentials)


class CustodySigner:
    """
    Delegates signing and sending to a CDP server wallet account.

    Nothing touches the custody service until the first call, so read-only
    operations keep working without credentials.
    """

    name = "custody"

    def __init__(
        self,
        api_key_id: str | None,
        api_key_secret: str | None,
        wallet_secret: str | None,
        account_name: str,
        account_address: str | None = None,
        client_factory: Callable[..., Any] | None = None,
    ):
        self.api_key_id = api_key_id
        self.api_key_secret = api_key_secret
        self.wallet_secret = wallet_secret
        self.account_name = account_name
        self.account_address = account_address
        self._client_factory = client_factory or _default_cdp_client
        self._client = None
        self._account = None

    async def initialize(self) -> None:
        if self._account is not None:
            return
        if not self.api_key_id or not self.api_key_secret:
            raise SignerUnavailable("CDP_API_KEY_ID and CDP_API_KEY_SECRET must be set")
        if not self.wallet_secret:
            raise SignerUnavailable("CDP_WALLET_SECRET must be set")

        self._client = self._client_factory(
            api_key_id=self.api_key_id,
            api_key_secret=self.api_key_secret,
            wallet_secret=self.wallet_secret,
        )
        ref = self.account_address or self.account_name
        try:
            if self.account_address:
                account = await self._client.evm.get_account(address=Web3.to_checksum_address(self.account_address))
            else:
                account = await self._client.evm.get_account(name=self.account_name)
        except Exception as e:
            await self.close()
            raise SignerUnavailable(f"Custody account '{ref}' not found: {e}") from e
        self._account = account
        log.info("CUSTODY_SIGNER_INITIALIZED", account=ref, address=account.address)

    async def address(self) -> str:
        await self.initialize()
        return self._account.address

    async def sign_message(self, message: str | bytes) -> str:
        await self.initialize()
        # The custody API signs strings only; bytes go over as their hex text.
        text = message if isinstance(message, str) else Web3.to_hex(message)
        return await self._client.evm.sign_message(address=self._account.address, message=text)

    async def submit_transaction(self, network: str, tx: TxRequest) -> str:
        await self.initialize()
        from cdp.evm_transaction_types import TransactionRequestEIP1559

        fields: Dict[str, Any] = {"to": Web3.to_checksum_address(tx.to), "value": tx.value, "data": tx.data}
        if tx.gas is not None:
            fields["gas"] = tx.gas
        tx_hash = await self._client.evm.send_transaction(
            address=self._account.address,
            transaction=TransactionRequestEIP1559(**fields),
            network=network,
        )
        log.info("CUSTODY_SIGNER_TX_SENT", network=network, tx_hash=tx_hash)
        return tx_hash

    async def close(self):
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            await client.close()


class SignerChain:
    """
    Ordered signer constructors, tried at first use. The first signer that
    initializes is cached for the life of the process.
    """

    name = "chain"

    def __init__(self, factories: Sequence[Tuple[str, Callable[[], RemoteSigner]]]):
        self._factories = list(factories)
        self._active: RemoteSigner | None = None
        self._lock = asyncio.Lock()

    @property
    def active_name(self) -> str | None:
        return self._active.name if self._active else None

    async def resolve(self) -> RemoteSigner:
        if self._active is not None:
            return self._active
        async with self._lock:
            if self._active is not None:
                return self._active
            causes: Dict[str, str] = {}
            for name, factory in self._factories:
                try:
                    signer = factory()
                    await signer.initialize()
                except Exception as e:
                    causes[name] = str(e)
                    SIGNER_FALLBACKS.labels(name).inc()
                    log.warning("SIGNER_INIT_FAILED_FALLING_BACK", signer=name, error=str(e))
                    continue
                self._active = signer
                log.info("SIGNER_SELECTED", signer=name, skipped=list(causes))
                return signer
            log.error("SIGNER_UNAVAILABLE", causes=causes)
            raise SignerUnavailable(causes=causes)

    async def initialize(self) -> None:
        await self.resolve()

    async def address(self) -> str:
        return await (await self.resolve()).address()

    async def sign_message(self, message: str | bytes) -> str:
        return await (await self.resolve()).sign_message(message)

    async def submit_transaction(self, network: str, tx: TxRequest) -> str:
        return await (await self.resolve()).submit_transaction(network, tx)


def build_signer_chain(settings: Settings, networks: NetworkRegistry) -> SignerChain:
    def custody() -> RemoteSigner:
        return CustodySigner(
            api_key_id=settings.CDP_API_KEY_ID.get_secret_value() if settings.CDP_API_KEY_ID else None,
            api_key_secret=settings.CDP_API_KEY_SECRET.get_secret_value() if settings.CDP_API_KEY_SECRET else None,
            wallet_secret=settings.CDP_WALLET_SECRET.get_secret_value() if settings.CDP_WALLET_SECRET else None,
            account_name=settings.CDP_ACCOUNT_NAME,
            account_address=settings.CDP_ACCOUNT_ADDRESS,
        )

    def local() -> RemoteSigner:
        key = settings.PRIVATE_KEY.get_secret_value() if settings.PRIVATE_KEY else None
        return LocalKeySigner(key, networks)

    known: Dict[str, Callable[[], RemoteSigner]] = {"custody": custody, "local": local}
    order: List[Tuple[str, Callable[[], RemoteSigner]]] = []
    for name in settings.SIGNER_ORDER:
        if name not in known:
            raise ValueError(f"Unknown signer '{name}' in SIGNER_ORDER")
        order.append((name, known[name]))
    return SignerChain(order)
