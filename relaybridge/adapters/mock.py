# /relaybridge/adapters/mock.py
# Simulation implementations of the signer and destination provider for
# tests and dry runs. Nothing here talks to a network.
from typing import Any, Dict, List

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from relaybridge.core.errors import SignerUnavailable
from relaybridge.core.logger import get_logger
from relaybridge.core.signer import TxRequest

log = get_logger(__name__)


class MockSigner:
    """
    Signs for real with a throwaway key but never broadcasts.
    Submitted transactions are recorded in ``sent_transactions``.
    """

    def __init__(self, private_key: str | None = None, name: str = "mock", available: bool = True):
        self.name = name
        self.account = Account.from_key(private_key) if private_key else Account.create()
        self.available = available
        self.sent_transactions: List[Dict[str, Any]] = []
        self.signed_messages: List[str | bytes] = []
        self._must_fail = False

    def set_next_call_to_fail(self, fail: bool = True):
        """Configure the mock to raise on the next submission."""
        self._must_fail = fail

    async def initialize(self) -> None:
        if not self.available:
            raise SignerUnavailable(f"{self.name} signer not configured")

    async def address(self) -> str:
        await self.initialize()
        return self.account.address

    async def sign_message(self, message: str | bytes) -> str:
        await self.initialize()
        self.signed_messages.append(message)
        signable = encode_defunct(text=message) if isinstance(message, str) else encode_defunct(primitive=message)
        return Web3.to_hex(self.account.sign_message(signable).signature)

    async def submit_transaction(self, network: str, tx: TxRequest) -> str:
        await self.initialize()
        if self._must_fail:
            self._must_fail = False
            log.error("MOCK_TX_FORCED_FAILURE", network=network, to=tx.to)
            raise ConnectionError("Forced failure for testing.")
        tx_hash = "0x" + f"{len(self.sent_transactions) + 1:064x}"
        self.sent_transactions.append({"hash": tx_hash, "network": network, "to": tx.to, "data": tx.data, "gas": tx.gas})
        log.info("MOCK_TRANSACTION_SENT", network=network, tx_hash=tx_hash, gas=tx.gas)
        return tx_hash


class MockEth:
    def __init__(self, gas: int = 100_000, revert: str | None = None, receipt_status: int = 1):
        self.gas = gas
        self.revert = revert
        self.receipt_status = receipt_status
        self.estimates: List[Dict[str, Any]] = []

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        self.estimates.append(tx)
        if self.revert is not None:
            raise ValueError(self.revert)
        return self.gas

    async def wait_for_transaction_receipt(self, tx_hash: str, timeout: float = 120):
        return {"transactionHash": tx_hash, "status": self.receipt_status, "blockNumber": 1}


class MockWeb3:
    """Stands in for an ``AsyncWeb3`` destination provider."""

    def __init__(self, **kwargs):
        self.eth = MockEth(**kwargs)


class MockOracleResponse:
    def __init__(self, status: int, body: Dict[str, Any] | None = None):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class MockOracleSession:
    """
    Stands in for the attestation service's ``aiohttp`` session.
    Replays scripted ``(status, body)`` answers; the last one repeats.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [(404, None)]
        self.calls: List[tuple] = []
        self.closed = False

    def get(self, url: str, params: Dict[str, str] | None = None) -> MockOracleResponse:
        self.calls.append((url, params))
        status, body = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        return MockOracleResponse(status, body)

    async def close(self):
        self.closed = True
