# /relaybridge/adapters/oracle.py
# Oracle-attested path: reads burn attestations from the CCTP attestation service.
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Tuple

import aiohttp
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from relaybridge.core.decorators import retriable_network_call
from relaybridge.core.errors import AttestationFailed, AttestationPending, AttestationTimeout, ValidationError
from relaybridge.core.logger import get_logger, ATTESTATIONS_ACQUIRED
from relaybridge.core.models import OracleAttestation, OracleDescriptor

log = get_logger(__name__)

# Server-side conditions that usually clear up by themselves.
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class OracleState(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class OracleStatus:
    state: OracleState
    attestation: OracleAttestation | None = None
    detail: str = ""


def _present(value: Any) -> bool:
    # the service reports "0x" for a message it has not finished building
    return isinstance(value, str) and value not in ("", "0x")


def interpret_response(status: int, body: Dict[str, Any] | None) -> OracleStatus:
    """Map one attestation-service response to pending, complete or failed."""
    if status == 404:
        return OracleStatus(OracleState.PENDING, detail="transaction not indexed yet")
    if status in TRANSIENT_STATUSES:
        return OracleStatus(OracleState.PENDING, detail=f"attestation service returned {status}")
    if status >= 400:
        return OracleStatus(OracleState.FAILED, detail=f"attestation service returned {status}")

    messages = (body or {}).get("messages") or []
    if not messages:
        return OracleStatus(OracleState.PENDING, detail="no messages yet")

    entry = messages[0]
    entry_status = str(entry.get("status") or "").lower()
    if entry_status == "complete":
        if _present(entry.get("message")) and _present(entry.get("attestation")):
            return OracleStatus(
                OracleState.COMPLETE,
                attestation=OracleAttestation(message=entry["message"], proof=entry["attestation"], status="complete"),
            )
        return OracleStatus(OracleState.PENDING, detail="complete without message or attestation")
    if entry_status == "" or entry_status.startswith("pending"):
        return OracleStatus(OracleState.PENDING, detail=entry_status or "pending")
    return OracleStatus(OracleState.FAILED, detail=f"attestation status '{entry_status}'")


class OracleAttestationSource:
    """
    Client for ``GET {base}/{sourceDomain}?transactionHash={hash}``.

    ``poll`` is a pure client-side retry loop: no lock is held between
    attempts, so any number of polls can run concurrently.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        http_timeout: float = 10.0,
        poll_interval: float = 5.0,
        max_attempts: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.http_timeout = http_timeout
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.http_timeout))
        return self._session

    @retriable_network_call
    async def _get(self, url: str, params: Dict[str, str]) -> Tuple[int, Dict[str, Any] | None]:
        async with self._get_session().get(url, params=params) as resp:
            if resp.status != 200:
                return resp.status, None
            return resp.status, await resp.json(content_type=None)

    async def check(self, descriptor: OracleDescriptor) -> OracleStatus:
        url = f"{self.base_url}/{descriptor.source_domain}"
        try:
            status, body = await self._get(url, {"transactionHash": descriptor.tx_hash})
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
            log.warning("ORACLE_UNREACHABLE", domain=descriptor.source_domain, tx_hash=descriptor.tx_hash, error=str(e))
            return OracleStatus(OracleState.PENDING, detail=f"attestation service unreachable: {e}")
        result = interpret_response(status, body)
        log.debug("ORACLE_STATUS", domain=descriptor.source_domain, tx_hash=descriptor.tx_hash,
                  state=result.state.value, detail=result.detail)
        return result

    async def acquire(self, descriptor: OracleDescriptor) -> OracleAttestation:
        result = await self.check(descriptor)
        if result.state is OracleState.COMPLETE:
            ATTESTATIONS_ACQUIRED.labels("oracle").inc()
            return result.attestation
        if result.state is OracleState.FAILED:
            raise AttestationFailed(f"Attestation failed for {descriptor.tx_hash}: {result.detail}")
        raise AttestationPending(f"Attestation pending for {descriptor.tx_hash}: {result.detail}")

    async def poll(
        self,
        descriptor: OracleDescriptor,
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
        deadline: float | None = None,
    ) -> OracleAttestation:
        """
        Calls ``acquire`` up to ``max_attempts`` times, ``interval`` seconds apart.

        Raises ``AttestationFailed`` at once on a terminal failure and
        ``AttestationTimeout`` when the attempts or the ``deadline`` (seconds)
        run out. Cancelling the awaiting task stops the loop.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            raise ValidationError(f"max_attempts must be at least 1, got {attempts!r}")
        wait = self.poll_interval if interval is None else interval
        loop = self._poll(descriptor, attempts, wait)
        if deadline is None:
            return await loop
        try:
            return await asyncio.wait_for(loop, timeout=deadline)
        except asyncio.TimeoutError:
            raise AttestationTimeout(f"Attestation for {descriptor.tx_hash} not ready within {deadline}s")

    async def _poll(self, descriptor: OracleDescriptor, attempts: int, interval: float) -> OracleAttestation:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(AttestationPending),
            sleep=self._sleep,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        log.info("WAITING_FOR_ATTESTATION", tx_hash=descriptor.tx_hash, attempt=n, max_attempts=attempts)
                    return await self.acquire(descriptor)
        except RetryError:
            log.warning("ATTESTATION_POLL_EXHAUSTED", tx_hash=descriptor.tx_hash, attempts=attempts)
            raise AttestationTimeout(attempts=attempts)
        raise AttestationTimeout(attempts=attempts)

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
