# /test/chaos/test_oracle_resilience.py
import aiohttp
import pytest

from relaybridge.adapters.mock import MockOracleResponse
from relaybridge.adapters.oracle import OracleAttestationSource, OracleState
from relaybridge.core.models import OracleDescriptor

DESCRIPTOR = OracleDescriptor(source_domain=0, tx_hash="0x" + "cd" * 32)
COMPLETE = {"messages": [{"message": "0xaa", "attestation": "0xbb", "status": "complete"}]}


class FlakySession:
    """Drops the first ``failures`` connections, then answers normally."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.closed = False

    def get(self, url, params=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise aiohttp.ClientConnectionError("connection reset by peer")
        return MockOracleResponse(200, COMPLETE)


@pytest.mark.chaos
@pytest.mark.asyncio
async def test_transient_transport_error_is_retried():
    session = FlakySession(failures=1)
    status = await OracleAttestationSource("https://iris.test", session=session).check(DESCRIPTOR)
    assert status.state is OracleState.COMPLETE
    assert session.calls == 2


@pytest.mark.chaos
@pytest.mark.asyncio
async def test_unreachable_service_reads_as_pending():
    session = FlakySession(failures=10)
    status = await OracleAttestationSource("https://iris.test", session=session).check(DESCRIPTOR)
    assert status.state is OracleState.PENDING
    assert session.calls == 3
