# /test/test_receipt.py
import pytest
from eth_account import Account
from web3 import Web3

from relaybridge.adapters.mock import MockSigner
from relaybridge.adapters.receipt import (
    MessageEnvelope,
    ReceiptAttestationSource,
    new_receipt_nonce,
    receipt_digest,
    recover_receipt_signer,
    signable_receipt,
)
from relaybridge.core.errors import SignatureMismatch, ValidationError
from relaybridge.core.models import ReceiptDescriptor

VAULT = "0x1111111111111111111111111111111111111111"
DESCRIPTOR = ReceiptDescriptor(
    amount=1_000_000, nonce=42, source_chain_id=7, destination_chain_id=84532, destination_contract=VAULT
)


class RawDigestSigner(MockSigner):
    """A signer that wraps the raw 32 bytes even when handed hex text."""

    async def sign_message(self, message):
        if isinstance(message, str):
            message = Web3.to_bytes(hexstr=message)
        return await super().sign_message(message)


def test_digest_matches_packed_encoding():
    packed = (
        bytes.fromhex(VAULT[2:])
        + (1_000_000).to_bytes(32, "big")
        + (42).to_bytes(32, "big")
        + (7).to_bytes(32, "big")
        + (84532).to_bytes(32, "big")
    )
    assert receipt_digest(VAULT, 1_000_000, 42, 7, 84532) == bytes(Web3.keccak(packed))
    # address case does not change the digest
    assert receipt_digest(VAULT.upper().replace("0X", "0x"), 1_000_000, 42, 7, 84532) == bytes(Web3.keccak(packed))


def test_envelopes():
    digest = receipt_digest(VAULT, 1, 2, 3, 4)
    hex_text = signable_receipt(digest, MessageEnvelope.HEX_TEXT)
    assert hex_text.header.endswith(b"\n66")
    assert hex_text.body == Web3.to_hex(digest).encode()

    raw = signable_receipt(digest, MessageEnvelope.BYTES32)
    assert raw.header.endswith(b"\n32")
    assert raw.body == digest


@pytest.mark.asyncio
async def test_acquire_signs_and_self_verifies():
    signer = MockSigner()
    attestation = await ReceiptAttestationSource(signer).acquire(DESCRIPTOR)

    assert attestation.signature.startswith("0x") and len(attestation.signature) == 132
    assert attestation.signer == signer.account.address
    assert attestation.message_hash == Web3.to_hex(receipt_digest(VAULT, 1_000_000, 42, 7, 84532))
    assert signer.signed_messages == [attestation.message_hash]


@pytest.mark.asyncio
async def test_bytes32_envelope_round_trip():
    signer = MockSigner()
    source = ReceiptAttestationSource(signer, envelope=MessageEnvelope.BYTES32)
    attestation = await source.acquire(DESCRIPTOR)
    digest = receipt_digest(VAULT, 1_000_000, 42, 7, 84532)
    assert recover_receipt_signer(digest, attestation.signature, MessageEnvelope.BYTES32) == signer.account.address


@pytest.mark.asyncio
async def test_untrusted_signer_is_rejected():
    source = ReceiptAttestationSource(MockSigner(), trusted_signer=Account.create().address)
    with pytest.raises(SignatureMismatch) as exc:
        await source.acquire(DESCRIPTOR)
    assert exc.value.recovered != exc.value.expected


@pytest.mark.asyncio
async def test_signer_with_other_envelope_is_rejected():
    with pytest.raises(SignatureMismatch):
        await ReceiptAttestationSource(RawDigestSigner()).acquire(DESCRIPTOR)


@pytest.mark.asyncio
async def test_verify_caller_signature():
    signer = MockSigner()
    source = ReceiptAttestationSource(signer)
    attestation = await source.acquire(DESCRIPTOR)
    assert await source.verify(DESCRIPTOR, attestation.signature) == signer.account.address

    tampered = DESCRIPTOR.model_copy(update={"amount": 2_000_000})
    with pytest.raises(SignatureMismatch):
        await source.verify(tampered, attestation.signature)
    with pytest.raises(ValidationError):
        await source.verify(DESCRIPTOR, "0x1234")


def test_nonces_are_unique_and_time_ordered():
    nonces = [new_receipt_nonce() for _ in range(1000)]
    assert len(set(nonces)) == 1000
    assert all(n > 0 for n in nonces)
    assert (nonces[-1] >> 32) >= (nonces[0] >> 32)
