# /relaybridge/core/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BridgePath(str, Enum):
    ORACLE = "oracle"    # burn observed and attested by the external oracle (CCTP)
    RECEIPT = "receipt"  # trusted signer attests receipt directly


class SourceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    chain_id: int | None = None
    domain: int | None = None  # oracle protocol domain, not a chain id


class OracleAttestation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["oracle"] = "oracle"
    message: str = Field(min_length=3)
    proof: str = Field(min_length=3)
    status: str = "complete"


class ReceiptAttestation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["receipt"] = "receipt"
    signature: str = Field(min_length=3)
    message_hash: str | None = None
    signer: str | None = None


Attestation = Annotated[Union[OracleAttestation, ReceiptAttestation], Field(discriminator="kind")]


class DepositCandidate(BaseModel):
    user_address: str
    natural_key: str
    source: SourceDescriptor
    amount: int
    source_tx_hash: str | None = None


class Deposit(BaseModel):
    """A single bridging attempt as stored in the ledger.

    ``redeemed_at`` and ``redeem_tx_hash`` are only ever set on the snapshot
    returned by a consume; stored records never carry them.
    """
    id: str
    path: BridgePath
    user_address: str
    natural_key: str
    source: SourceDescriptor
    amount: int
    source_tx_hash: str | None = None
    attestation: Attestation | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    redeemed: bool = False
    redeemed_at: datetime | None = None
    redeem_tx_hash: str | None = None

    @field_validator("user_address")
    @classmethod
    def _lower_address(cls, v: str) -> str:
        return v.lower()

    @classmethod
    def from_candidate(cls, path: BridgePath, candidate: DepositCandidate) -> "Deposit":
        now = datetime.now(timezone.utc)
        return cls(
            id=f"{candidate.natural_key}-{int(now.timestamp() * 1000)}",
            path=path,
            user_address=candidate.user_address,
            natural_key=candidate.natural_key,
            source=candidate.source,
            amount=candidate.amount,
            source_tx_hash=candidate.source_tx_hash,
            created_at=now,
        )

    def consumed(self, redeem_tx_hash: str) -> "Deposit":
        return self.model_copy(update={
            "redeemed": True,
            "redeemed_at": datetime.now(timezone.utc),
            "redeem_tx_hash": redeem_tx_hash,
        })


class OracleDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Literal["oracle"] = "oracle"
    source_domain: int
    tx_hash: str


class ReceiptDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Literal["receipt"] = "receipt"
    amount: int
    nonce: int
    source_chain_id: int
    destination_chain_id: int
    destination_contract: str


AttestationDescriptor = Annotated[Union[OracleDescriptor, ReceiptDescriptor], Field(discriminator="path")]


class OracleRedeemRequest(BaseModel):
    message: str
    proof: str
    natural_key: str | None = None  # source tx hash, used to consume the ledger record
    user_address: str | None = None


class ReceiptRedeemRequest(BaseModel):
    amount: int
    nonce: int
    source_chain_id: int
    signature: str
    user_address: str | None = None


class RedemptionResult(BaseModel):
    tx_hash: str
    consumed: Deposit | None = None
