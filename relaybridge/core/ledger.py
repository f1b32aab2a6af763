# /relaybridge/core/ledger.py
# Durable deposit ledger. One instance per bridge path.
import asyncio
import fcntl
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Protocol

import aiofiles
import aiofiles.os

from relaybridge.core.errors import ConflictError, NotFoundError, ValidationError
from relaybridge.core.logger import get_logger, DEPOSITS_RECORDED, DEPOSITS_CONSUMED
from relaybridge.core.models import Attestation, BridgePath, Deposit, DepositCandidate

log = get_logger(__name__)


class DepositLedger(Protocol):
    path: BridgePath

    async def insert(self, candidate: DepositCandidate) -> Deposit: ...
    async def get_by_id(self, deposit_id: str) -> Deposit: ...
    async def find_by_natural_key(self, natural_key: str, user: str | None = None) -> Deposit: ...
    async def list_unredeemed(self, user: str | None = None) -> List[Deposit]: ...
    async def attach_attestation(self, deposit_id: str, payload: Attestation) -> Deposit: ...
    async def consume_and_delete(self, deposit_id: str, redeem_tx_hash: str) -> Deposit: ...


def normalize_key(path: BridgePath, natural_key: str) -> str:
    """Tx hashes compare case-insensitively; nonces are decimal strings."""
    key = natural_key.strip()
    if path is BridgePath.ORACLE:
        return key.lower()
    try:
        return str(int(key))
    except ValueError:
        raise ValidationError(f"Nonce must be a decimal integer, got {natural_key!r}")


def newest_first(deposits: List[Deposit]) -> List[Deposit]:
    return sorted(deposits, key=lambda d: d.created_at, reverse=True)


def log_consumed(deposit: Deposit):
    """The audit log is the deletion log: it keeps the consumed snapshot."""
    DEPOSITS_CONSUMED.labels(deposit.path.value).inc()
    log.info(
        "DEPOSIT_CONSUMED",
        deposit_id=deposit.id,
        path=deposit.path.value,
        user=deposit.user_address,
        natural_key=deposit.natural_key,
        amount=str(deposit.amount),
        redeemed_at=deposit.redeemed_at.isoformat() if deposit.redeemed_at else None,
        redeem_tx_hash=deposit.redeem_tx_hash,
    )


class JsonFileDepositLedger:
    """JSON file store: an ordered list of records keyed by ``id``.

    Every mutation holds an exclusive ``flock`` on a sibling lock file, re-reads
    the file, mutates and atomically replaces it (temp file + fsync + rename),
    so several processes can share one data directory. Reads take no lock.
    """

    def __init__(self, path: BridgePath, data_dir: str | Path):
        self.path = path
        self.data_dir = Path(data_dir)
        self.file = self.data_dir / f"{path.value}-deposits.json"
        self.lock_file = self.data_dir / f"{path.value}-deposits.lock"
        self._lock = asyncio.Lock()
        os.makedirs(self.data_dir, exist_ok=True)

    @asynccontextmanager
    async def _exclusive(self):
        async with self._lock:
            fd = open(self.lock_file, "a+")
            try:
                await asyncio.to_thread(fcntl.flock, fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                fd.close()

    async def _load(self) -> Dict[str, Deposit]:
        try:
            async with aiofiles.open(self.file, "r", encoding="utf-8") as f:
                data = await f.read()
        except FileNotFoundError:
            return {}
        if not data.strip():
            return {}
        records = json.loads(data)
        return {r["id"]: Deposit.model_validate(r) for r in records}

    async def _save(self, deposits: Dict[str, Deposit]):
        payload = json.dumps([d.model_dump(mode="json") for d in deposits.values()], indent=2)
        tmp = self.file.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(payload)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp, self.file)
        log.debug("LEDGER_FLUSHED", path=self.path.value, count=len(deposits))

    @staticmethod
    def _match(deposits: Dict[str, Deposit], key: str, user: str | None) -> Deposit | None:
        for d in deposits.values():
            if d.natural_key != key or d.redeemed:
                continue
            if user is None or d.user_address == user.lower():
                return d
        return None

    async def insert(self, candidate: DepositCandidate) -> Deposit:
        key = normalize_key(self.path, candidate.natural_key)
        async with self._exclusive():
            deposits = await self._load()
            existing = self._match(deposits, key, candidate.user_address)
            if existing:
                raise ConflictError(f"Deposit {key} already recorded for {existing.user_address} ({existing.id})")
            deposit = Deposit.from_candidate(self.path, candidate.model_copy(update={"natural_key": key}))
            if deposit.id in deposits:
                # same key, same millisecond, different user
                deposit = deposit.model_copy(update={"id": f"{deposit.id}-{len(deposits)}"})
            deposits[deposit.id] = deposit
            await self._save(deposits)
        DEPOSITS_RECORDED.labels(self.path.value).inc()
        log.info("DEPOSIT_RECORDED", deposit_id=deposit.id, path=self.path.value,
                 user=deposit.user_address, amount=str(deposit.amount), source=deposit.source.label)
        return deposit

    async def get_by_id(self, deposit_id: str) -> Deposit:
        deposit = (await self._load()).get(deposit_id)
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return deposit

    async def find_by_natural_key(self, natural_key: str, user: str | None = None) -> Deposit:
        key = normalize_key(self.path, natural_key)
        deposit = self._match(await self._load(), key, user)
        if deposit is None:
            raise NotFoundError(f"No unredeemed deposit for {key}")
        return deposit

    async def list_unredeemed(self, user: str | None = None) -> List[Deposit]:
        deposits = [
            d for d in (await self._load()).values()
            if not d.redeemed and (user is None or d.user_address == user.lower())
        ]
        return newest_first(deposits)

    async def attach_attestation(self, deposit_id: str, payload: Attestation) -> Deposit:
        async with self._exclusive():
            deposits = await self._load()
            deposit = deposits.get(deposit_id)
            if deposit is None:
                raise NotFoundError(f"Deposit {deposit_id} not found")
            if deposit.attestation == payload:
                return deposit
            deposit = deposit.model_copy(update={"attestation": payload})
            deposits[deposit_id] = deposit
            await self._save(deposits)
        log.info("DEPOSIT_ATTESTATION_ATTACHED", deposit_id=deposit_id, kind=payload.kind)
        return deposit

    async def consume_and_delete(self, deposit_id: str, redeem_tx_hash: str) -> Deposit:
        async with self._exclusive():
            deposits = await self._load()
            deposit = deposits.pop(deposit_id, None)
            if deposit is None:
                raise NotFoundError(f"Deposit {deposit_id} not found or already consumed")
            await self._save(deposits)
        snapshot = deposit.consumed(redeem_tx_hash)
        log_consumed(snapshot)
        return snapshot
