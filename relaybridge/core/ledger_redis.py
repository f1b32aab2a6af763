# /relaybridge/core/ledger_redis.py
# Redis-backed deposit ledger for multi-process deployments.
# Durability depends on the server running with `appendfsync always`.
from typing import List

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from relaybridge.core.errors import ConflictError, NotFoundError
from relaybridge.core.ledger import log_consumed, newest_first, normalize_key
from relaybridge.core.logger import get_logger, DEPOSITS_RECORDED
from relaybridge.core.models import Attestation, BridgePath, Deposit, DepositCandidate

log = get_logger(__name__)


class RedisDepositLedger:
    """
    Every multi-key change is one WATCH/MULTI/EXEC transaction, so a dropped
    connection leaves either all of a deposit's keys or none of them. SET XX
    keeps attestation updates from resurrecting a consumed record.
    """

    def __init__(self, path: BridgePath, client: aioredis.Redis, prefix: str = "relaybridge"):
        self.path = path
        self.redis = client
        self.ns = f"{prefix}:{path.value}"

    @classmethod
    def from_url(cls, path: BridgePath, url: str) -> "RedisDepositLedger":
        return cls(path, aioredis.Redis.from_url(url, decode_responses=True))

    def _record_key(self, deposit_id: str) -> str:
        return f"{self.ns}:deposit:{deposit_id}"

    def _index_key(self, user: str, natural_key: str) -> str:
        return f"{self.ns}:key:{user.lower()}:{natural_key}"

    def _user_set(self, user: str) -> str:
        return f"{self.ns}:user:{user.lower()}"

    @property
    def _all_set(self) -> str:
        return f"{self.ns}:unredeemed"

    async def insert(self, candidate: DepositCandidate) -> Deposit:
        key = normalize_key(self.path, candidate.natural_key)
        deposit = Deposit.from_candidate(self.path, candidate.model_copy(update={"natural_key": key}))
        index_key = self._index_key(deposit.user_address, key)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(index_key, self._record_key(deposit.id))
                    existing = await pipe.get(index_key)
                    if existing is not None:
                        raise ConflictError(f"Deposit {key} already recorded for {deposit.user_address} ({existing})")
                    if await pipe.get(self._record_key(deposit.id)) is not None:
                        # same key, same millisecond, different user
                        deposit = deposit.model_copy(update={"id": f"{deposit.id}-{deposit.user_address[2:10]}"})
                        await pipe.watch(self._record_key(deposit.id))

                    score = deposit.created_at.timestamp()
                    pipe.multi()
                    pipe.set(index_key, deposit.id)
                    pipe.set(self._record_key(deposit.id), deposit.model_dump_json())
                    pipe.zadd(self._all_set, {deposit.id: score})
                    pipe.zadd(self._user_set(deposit.user_address), {deposit.id: score})
                    await pipe.execute()
                    break
                except WatchError:
                    log.debug("DEPOSIT_INSERT_CONTENDED", natural_key=key, user=deposit.user_address)

        DEPOSITS_RECORDED.labels(self.path.value).inc()
        log.info("DEPOSIT_RECORDED", deposit_id=deposit.id, path=self.path.value,
                 user=deposit.user_address, amount=str(deposit.amount), source=deposit.source.label)
        return deposit

    async def get_by_id(self, deposit_id: str) -> Deposit:
        raw = await self.redis.get(self._record_key(deposit_id))
        if raw is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return Deposit.model_validate_json(raw)

    async def find_by_natural_key(self, natural_key: str, user: str | None = None) -> Deposit:
        key = normalize_key(self.path, natural_key)
        if user is not None:
            deposit_id = await self.redis.get(self._index_key(user, key))
            if deposit_id is None:
                raise NotFoundError(f"No unredeemed deposit for {key}")
            return await self.get_by_id(deposit_id)
        for deposit in await self.list_unredeemed():
            if deposit.natural_key == key:
                return deposit
        raise NotFoundError(f"No unredeemed deposit for {key}")

    async def list_unredeemed(self, user: str | None = None) -> List[Deposit]:
        zset = self._user_set(user) if user else self._all_set
        ids = await self.redis.zrevrange(zset, 0, -1)
        if not ids:
            return []
        raws = await self.redis.mget([self._record_key(i) for i in ids])
        # ids whose record was consumed between the two reads drop out here
        return newest_first([Deposit.model_validate_json(r) for r in raws if r is not None])

    async def attach_attestation(self, deposit_id: str, payload: Attestation) -> Deposit:
        deposit = await self.get_by_id(deposit_id)
        if deposit.attestation == payload:
            return deposit
        deposit = deposit.model_copy(update={"attestation": payload})
        if not await self.redis.set(self._record_key(deposit_id), deposit.model_dump_json(), xx=True):
            raise NotFoundError(f"Deposit {deposit_id} was consumed while attaching attestation")
        log.info("DEPOSIT_ATTESTATION_ATTACHED", deposit_id=deposit_id, kind=payload.kind)
        return deposit

    async def consume_and_delete(self, deposit_id: str, redeem_tx_hash: str) -> Deposit:
        record_key = self._record_key(deposit_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(record_key)
                    raw = await pipe.get(record_key)
                    if raw is None:
                        raise NotFoundError(f"Deposit {deposit_id} not found or already consumed")
                    deposit = Deposit.model_validate_json(raw)
                    index_key = self._index_key(deposit.user_address, deposit.natural_key)
                    await pipe.watch(index_key)
                    indexed = await pipe.get(index_key)

                    pipe.multi()
                    pipe.delete(record_key)
                    pipe.zrem(self._all_set, deposit_id)
                    pipe.zrem(self._user_set(deposit.user_address), deposit_id)
                    if indexed == deposit_id:
                        pipe.delete(index_key)
                    await pipe.execute()
                    break
                except WatchError:
                    log.debug("DEPOSIT_CONSUME_CONTENDED", deposit_id=deposit_id)
        snapshot = deposit.consumed(redeem_tx_hash)
        log_consumed(snapshot)
        return snapshot

    async def close(self):
        await self.redis.aclose()
