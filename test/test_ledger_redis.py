# /test/test_ledger_redis.py
import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from relaybridge.core.errors import ConflictError, NotFoundError
from relaybridge.core.ledger_redis import RedisDepositLedger
from relaybridge.core.models import BridgePath, DepositCandidate, ReceiptAttestation, SourceDescriptor

USER = "0x" + "aa" * 20
SOURCE = SourceDescriptor(label="arc", chain_id=1918988905)


class DummyPipeline:
    """WATCH/MULTI/EXEC: immediate while watching, queued after ``multi``."""

    def __init__(self, redis):
        self.redis = redis
        self.ops = []
        self.watched = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.reset()
        return False

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.redis.versions.get(key, 0)
        return True

    async def get(self, key):
        return await self.redis.get(key)

    def multi(self):
        self.ops = []

    def set(self, *args, **kwargs):
        self.ops.append(("set", args, kwargs))
        return self

    def zadd(self, *args):
        self.ops.append(("zadd", args, {}))
        return self

    def zrem(self, *args):
        self.ops.append(("zrem", args, {}))
        return self

    def delete(self, *args):
        self.ops.append(("delete", args, {}))
        return self

    async def execute(self):
        try:
            await self.redis.before_exec(self)
            if any(self.redis.versions.get(k, 0) != v for k, v in self.watched.items()):
                raise WatchError("Watched variable changed.")
            return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]
        finally:
            await self.reset()

    async def reset(self):
        self.ops = []
        self.watched = {}


class DummyRedis:
    """In-memory subset of the redis.asyncio API the ledger uses."""

    def __init__(self):
        self.kv = {}
        self.zsets = {}
        self.versions = {}
        self.closed = False

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    async def before_exec(self, pipe):
        return None

    async def set(self, key, value, nx=False, xx=False):
        if nx and key in self.kv:
            return None
        if xx and key not in self.kv:
            return None
        self.kv[key] = value
        self._touch(key)
        return True

    async def get(self, key):
        return self.kv.get(key)

    async def mget(self, keys):
        return [self.kv.get(k) for k in keys]

    async def delete(self, *keys):
        for k in keys:
            self._touch(k)
        return sum(self.kv.pop(k, None) is not None for k in keys)

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        removed = sum(zset.pop(m, None) is not None for m in members)
        if not zset:
            self.zsets.pop(key, None)
        return removed

    async def zrevrange(self, key, start, end):
        members = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)
        return [m for m, _ in members]

    def pipeline(self, transaction=True):
        return DummyPipeline(self)

    async def aclose(self):
        self.closed = True


class DroppedExecRedis(DummyRedis):
    """The connection drops on the next EXEC; nothing queued is applied."""

    def __init__(self):
        super().__init__()
        self.drops = 1

    async def before_exec(self, pipe):
        if self.drops:
            self.drops -= 1
            raise RedisConnectionError("Connection reset by peer")


@pytest.fixture
def redis():
    return DummyRedis()


@pytest.fixture
def ledger(redis):
    return RedisDepositLedger(BridgePath.RECEIPT, redis)


def candidate(key="42", amount=1_000_000):
    return DepositCandidate(user_address=USER, natural_key=key, source=SOURCE, amount=amount)


@pytest.mark.asyncio
async def test_insert_find_and_conflict(ledger):
    stored = await ledger.insert(candidate())
    assert await ledger.find_by_natural_key("42", USER) == stored
    assert await ledger.find_by_natural_key("42") == stored
    with pytest.raises(ConflictError):
        await ledger.insert(candidate())


@pytest.mark.asyncio
async def test_consume_once_and_cleanup(ledger, redis):
    stored = await ledger.insert(candidate())
    consumed = await ledger.consume_and_delete(stored.id, "0x" + "ab" * 32)
    assert consumed.redeemed and consumed.redeem_tx_hash == "0x" + "ab" * 32
    with pytest.raises(NotFoundError):
        await ledger.consume_and_delete(stored.id, "0x" + "ab" * 32)
    assert await ledger.list_unredeemed(USER) == []
    assert redis.kv == {}
    # the natural key is free again once consumed
    await ledger.insert(candidate())


@pytest.mark.asyncio
async def test_list_newest_first_per_user_and_global(ledger):
    first = await ledger.insert(candidate("1"))
    await asyncio.sleep(0.01)
    second = await ledger.insert(candidate("2"))
    other = await ledger.insert(DepositCandidate(user_address="0x" + "cc" * 20, natural_key="3", source=SOURCE, amount=5))
    assert [d.id for d in await ledger.list_unredeemed(USER)] == [second.id, first.id]
    assert {d.id for d in await ledger.list_unredeemed()} == {first.id, second.id, other.id}


@pytest.mark.asyncio
async def test_attach_attestation_requires_live_record(ledger):
    stored = await ledger.insert(candidate())
    payload = ReceiptAttestation(signature="0x" + "12" * 65)
    assert (await ledger.attach_attestation(stored.id, payload)).attestation == payload
    await ledger.consume_and_delete(stored.id, "0x" + "cd" * 32)
    with pytest.raises(NotFoundError):
        await ledger.attach_attestation(stored.id, payload)


@pytest.mark.asyncio
async def test_concurrent_consume_has_one_winner(ledger):
    stored = await ledger.insert(candidate())
    results = await asyncio.gather(
        *(ledger.consume_and_delete(stored.id, "0x" + "ef" * 32) for _ in range(3)), return_exceptions=True
    )
    assert sum(not isinstance(r, Exception) for r in results) == 1


@pytest.mark.asyncio
async def test_close(ledger, redis):
    await ledger.close()
    assert redis.closed


@pytest.mark.asyncio
async def test_dropped_insert_leaves_no_orphan_index():
    redis = DroppedExecRedis()
    ledger = RedisDepositLedger(BridgePath.RECEIPT, redis)
    with pytest.raises(RedisConnectionError):
        await ledger.insert(candidate())
    assert redis.kv == {} and redis.zsets == {}
    with pytest.raises(NotFoundError):
        await ledger.find_by_natural_key("42", USER)

    stored = await ledger.insert(candidate())
    assert await ledger.find_by_natural_key("42", USER) == stored


@pytest.mark.asyncio
async def test_dropped_consume_keeps_deposit_whole():
    redis = DroppedExecRedis()
    redis.drops = 0
    ledger = RedisDepositLedger(BridgePath.RECEIPT, redis)
    stored = await ledger.insert(candidate())

    redis.drops = 1
    with pytest.raises(RedisConnectionError):
        await ledger.consume_and_delete(stored.id, "0x" + "ab" * 32)
    assert await ledger.find_by_natural_key("42", USER) == stored
    assert [d.id for d in await ledger.list_unredeemed(USER)] == [stored.id]

    await ledger.consume_and_delete(stored.id, "0x" + "ab" * 32)
    assert redis.kv == {}
    await ledger.insert(candidate())


class RacingRedis(DummyRedis):
    """Runs ``race`` once, between the ledger's reads and its EXEC."""

    def __init__(self):
        super().__init__()
        self.race = None

    async def before_exec(self, pipe):
        race, self.race = self.race, None
        if race is not None:
            await race()


@pytest.mark.asyncio
async def test_insert_loses_race_for_natural_key():
    redis = RacingRedis()
    ledger = RedisDepositLedger(BridgePath.RECEIPT, redis)
    rival = RedisDepositLedger(BridgePath.RECEIPT, redis)
    winner = []

    async def rival_insert():
        winner.append(await rival.insert(candidate()))

    redis.race = rival_insert
    with pytest.raises(ConflictError):
        await ledger.insert(candidate())
    assert [d.id for d in await ledger.list_unredeemed(USER)] == [winner[0].id]


@pytest.mark.asyncio
async def test_consume_retries_after_concurrent_attestation():
    redis = RacingRedis()
    ledger = RedisDepositLedger(BridgePath.RECEIPT, redis)
    stored = await ledger.insert(candidate())
    payload = ReceiptAttestation(signature="0x" + "12" * 65)

    async def attach():
        await ledger.attach_attestation(stored.id, payload)

    redis.race = attach
    consumed = await ledger.consume_and_delete(stored.id, "0x" + "ab" * 32)
    assert consumed.attestation == payload
    assert redis.kv == {}
