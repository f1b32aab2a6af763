# /relaybridge/adapters/receipt.py
# Signed-receipt path: a trusted signer attests "funds were received".
import secrets
import time
from enum import Enum

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct
from web3 import Web3

from relaybridge.core.errors import SignatureMismatch, ValidationError
from relaybridge.core.logger import get_logger, ATTESTATIONS_ACQUIRED
from relaybridge.core.models import ReceiptAttestation, ReceiptDescriptor
from relaybridge.core.signer import RemoteSigner

log = get_logger(__name__)

RECEIPT_TYPES = ["address", "uint256", "uint256", "uint256", "uint256"]


class MessageEnvelope(str, Enum):
    # "\x19Ethereum Signed Message:\n66" + the digest's 0x-hex text
    HEX_TEXT = "hex_text"
    # "\x19Ethereum Signed Message:\n32" + the raw digest bytes
    BYTES32 = "bytes32"


def receipt_digest(
    destination_contract: str, amount: int, nonce: int, source_chain_id: int, destination_chain_id: int
) -> bytes:
    """keccak256(abi.encodePacked(contract, amount, nonce, sourceChainId, destinationChainId))"""
    return bytes(Web3.solidity_keccak(
        RECEIPT_TYPES,
        [Web3.to_checksum_address(destination_contract), amount, nonce, source_chain_id, destination_chain_id],
    ))


def descriptor_digest(descriptor: ReceiptDescriptor) -> bytes:
    return receipt_digest(
        descriptor.destination_contract,
        descriptor.amount,
        descriptor.nonce,
        descriptor.source_chain_id,
        descriptor.destination_chain_id,
    )


def signer_payload(digest: bytes, envelope: MessageEnvelope) -> str | bytes:
    """What is handed to ``RemoteSigner.sign_message`` for a given envelope."""
    return Web3.to_hex(digest) if envelope is MessageEnvelope.HEX_TEXT else digest


def signable_receipt(digest: bytes, envelope: MessageEnvelope) -> SignableMessage:
    if envelope is MessageEnvelope.HEX_TEXT:
        return encode_defunct(text=Web3.to_hex(digest))
    return encode_defunct(primitive=digest)


def recover_receipt_signer(digest: bytes, signature: str, envelope: MessageEnvelope) -> str:
    try:
        return Account.recover_message(signable_receipt(digest, envelope), signature=signature)
    except Exception as e:
        raise ValidationError(f"Invalid signature format: {e}") from e


def new_receipt_nonce() -> int:
    """Millisecond timestamp with a 32-bit random suffix; safe to issue concurrently."""
    return (int(time.time() * 1000) << 32) | secrets.randbits(32)


class ReceiptAttestationSource:
    def __init__(
        self,
        signer: RemoteSigner,
        *,
        envelope: MessageEnvelope = MessageEnvelope.HEX_TEXT,
        trusted_signer: str | None = None,
    ):
        self.signer = signer
        self.envelope = MessageEnvelope(envelope)
        self._trusted_signer = trusted_signer

    async def trusted_address(self) -> str:
        if self._trusted_signer:
            return self._trusted_signer
        return await self.signer.address()

    async def verify(self, descriptor: ReceiptDescriptor, signature: str) -> str:
        """Recover the signer of ``signature`` and require it to be the trusted signer."""
        digest = descriptor_digest(descriptor)
        recovered = recover_receipt_signer(digest, signature, self.envelope)
        expected = await self.trusted_address()
        if recovered.lower() != expected.lower():
            log.warning("RECEIPT_SIGNATURE_MISMATCH", expected=expected, recovered=recovered,
                        message_hash=Web3.to_hex(digest), envelope=self.envelope.value)
            raise SignatureMismatch(expected=expected, recovered=recovered)
        return recovered

    async def acquire(self, descriptor: ReceiptDescriptor) -> ReceiptAttestation:
        """
        Sign the receipt and check the signature locally before handing it out.
        The signer's message convention can differ from what the contract
        hashes; a mismatch here would otherwise surface as an on-chain revert.
        """
        digest = descriptor_digest(descriptor)
        signature = await self.signer.sign_message(signer_payload(digest, self.envelope))
        signer = await self.verify(descriptor, signature)
        ATTESTATIONS_ACQUIRED.labels("receipt").inc()
        log.info("RECEIPT_ATTESTATION_ISSUED", amount=str(descriptor.amount), nonce=str(descriptor.nonce),
                 source_chain_id=descriptor.source_chain_id, destination_chain_id=descriptor.destination_chain_id,
                 signer=signer)
        return ReceiptAttestation(signature=signature, message_hash=Web3.to_hex(digest), signer=signer)
