# /relaybridge/core/rpc.py
# Per-network read providers for the destination side.
from typing import Dict, Iterable

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from relaybridge.core.errors import ValidationError
from relaybridge.core.logger import get_logger

log = get_logger(__name__)


class NetworkRegistry:
    """Resolves a network name to a cached ``AsyncWeb3`` with a request timeout."""

    def __init__(self, rpc_urls: Dict[str, str], *, timeout: float = 30.0, poa_networks: Iterable[str] = ()):
        self.rpc_urls = dict(rpc_urls)
        self.timeout = timeout
        self.poa_networks = set(poa_networks)
        self._providers: Dict[str, AsyncWeb3] = {}

    def networks(self):
        return sorted(self.rpc_urls)

    def get_provider(self, network: str) -> AsyncWeb3:
        if network in self._providers:
            return self._providers[network]
        url = self.rpc_urls.get(network)
        if not url:
            raise ValidationError(f"RPC URL not configured for network: {network}")
        w3 = AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout}))
        if network in self.poa_networks:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self._providers[network] = w3
        log.info("RPC_PROVIDER_CREATED", network=network, poa=network in self.poa_networks)
        return w3

    def register(self, network: str, w3: AsyncWeb3):
        """Install a pre-built provider (forks, tests)."""
        self._providers[network] = w3
