# /test/test_ledger.py
import asyncio
import json

import pytest

from relaybridge.core.errors import ConflictError, NotFoundError, ValidationError
from relaybridge.core.ledger import JsonFileDepositLedger
from relaybridge.core.models import BridgePath, DepositCandidate, OracleAttestation, SourceDescriptor

USER = "0x" + "aa" * 20
OTHER = "0x" + "bb" * 20
ARC = SourceDescriptor(label="arc", chain_id=5042002, domain=26)


def candidate(key="tx123", user=USER, amount=1_000_000):
    return DepositCandidate(user_address=user, natural_key=key, source=ARC, amount=amount)


@pytest.fixture
def ledger(tmp_path):
    return JsonFileDepositLedger(BridgePath.ORACLE, tmp_path)


@pytest.mark.asyncio
async def test_insert_then_find_returns_equal_record(ledger):
    stored = await ledger.insert(candidate())
    found = await ledger.find_by_natural_key("tx123", USER)
    assert found == stored
    assert stored.id.startswith("tx123-")
    assert stored.redeemed is False and stored.attestation is None


@pytest.mark.asyncio
async def test_duplicate_unredeemed_key_conflicts(ledger):
    await ledger.insert(candidate())
    with pytest.raises(ConflictError):
        await ledger.insert(candidate(key="TX123", user=USER.upper().replace("0X", "0x")))
    # a different user may record the same key
    await ledger.insert(candidate(user=OTHER))
    assert len(await ledger.list_unredeemed()) == 2


@pytest.mark.asyncio
async def test_consume_succeeds_exactly_once(ledger):
    stored = await ledger.insert(candidate())
    consumed = await ledger.consume_and_delete(stored.id, "0x" + "11" * 32)
    assert consumed.redeemed is True
    assert consumed.redeem_tx_hash == "0x" + "11" * 32
    assert consumed.redeemed_at is not None
    with pytest.raises(NotFoundError):
        await ledger.consume_and_delete(stored.id, "0x" + "11" * 32)


@pytest.mark.asyncio
async def test_deposit_lifecycle_scenario(ledger):
    stored = await ledger.insert(candidate())
    unredeemed = await ledger.list_unredeemed(USER)
    assert len(unredeemed) == 1 and unredeemed[0].amount == 1_000_000

    await ledger.consume_and_delete(stored.id, "0x" + "22" * 32)
    assert await ledger.list_unredeemed(USER) == []
    with pytest.raises(NotFoundError):
        await ledger.get_by_id(stored.id)


@pytest.mark.asyncio
async def test_store_never_keeps_redemption_fields(ledger):
    stored = await ledger.insert(candidate())
    other = await ledger.insert(candidate(key="tx456"))
    await ledger.consume_and_delete(stored.id, "0x" + "33" * 32)

    records = json.loads(ledger.file.read_text())
    assert [r["id"] for r in records] == [other.id]
    assert records[0]["redeemed_at"] is None and records[0]["redeem_tx_hash"] is None


@pytest.mark.asyncio
async def test_consumed_key_can_be_recorded_again(ledger):
    stored = await ledger.insert(candidate())
    await ledger.consume_and_delete(stored.id, "0x" + "44" * 32)
    again = await ledger.insert(candidate())
    assert again.natural_key == "tx123"


@pytest.mark.asyncio
async def test_list_is_newest_first(ledger):
    first = await ledger.insert(candidate(key="tx1"))
    await asyncio.sleep(0.01)
    second = await ledger.insert(candidate(key="tx2"))
    assert [d.id for d in await ledger.list_unredeemed(USER)] == [second.id, first.id]


@pytest.mark.asyncio
async def test_attach_attestation(ledger):
    stored = await ledger.insert(candidate())
    payload = OracleAttestation(message="0xabcd", proof="0xbeef")
    updated = await ledger.attach_attestation(stored.id, payload)
    assert updated.attestation == payload
    assert (await ledger.get_by_id(stored.id)).attestation == payload
    with pytest.raises(NotFoundError):
        await ledger.attach_attestation("missing", payload)


@pytest.mark.asyncio
async def test_concurrent_inserts_of_same_key_admit_one(ledger):
    results = await asyncio.gather(*(ledger.insert(candidate()) for _ in range(5)), return_exceptions=True)
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_two_instances_share_one_file(tmp_path):
    a = JsonFileDepositLedger(BridgePath.ORACLE, tmp_path)
    b = JsonFileDepositLedger(BridgePath.ORACLE, tmp_path)
    stored = await a.insert(candidate())
    with pytest.raises(ConflictError):
        await b.insert(candidate())
    await b.consume_and_delete(stored.id, "0x" + "55" * 32)
    with pytest.raises(NotFoundError):
        await a.consume_and_delete(stored.id, "0x" + "55" * 32)


@pytest.mark.asyncio
async def test_corrupt_file_is_an_error(ledger):
    ledger.file.write_text("{not json")
    with pytest.raises(json.JSONDecodeError):
        await ledger.list_unredeemed()


@pytest.mark.asyncio
async def test_receipt_keys_are_decimal_nonces(tmp_path):
    ledger = JsonFileDepositLedger(BridgePath.RECEIPT, tmp_path)
    stored = await ledger.insert(candidate(key="0042"))
    assert stored.natural_key == "42"
    assert (await ledger.find_by_natural_key("42")).id == stored.id
    with pytest.raises(ValidationError):
        await ledger.insert(candidate(key="not-a-nonce"))


@pytest.mark.asyncio
async def test_consumption_is_written_to_audit_log(ledger, tmp_path):
    stored = await ledger.insert(candidate())
    await ledger.consume_and_delete(stored.id, "0x" + "66" * 32)
    lines = (tmp_path / "audit.log").read_text().splitlines()
    events = [json.loads(line.rsplit("|", 1)[0]) for line in lines]
    consumed = [e for e in events if e["event"] == "DEPOSIT_CONSUMED"]
    assert len(consumed) == 1
    assert consumed[0]["deposit_id"] == stored.id
    assert consumed[0]["redeem_tx_hash"] == "0x" + "66" * 32
