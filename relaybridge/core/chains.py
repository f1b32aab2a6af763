# /relaybridge/core/chains.py
# Static CCTP deployment table used to describe oracle-path sources.
from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class CCTPConfig:
    domain: int
    chain_id: int
    token_messenger: str
    message_transmitter: str
    token_minter: str
    usdc: str


CCTP_CONFIGS: Dict[str, CCTPConfig] = {
    "arc": CCTPConfig(
        domain=26,
        chain_id=5042002,
        token_messenger="0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        message_transmitter="0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
        token_minter="0xb43db544E2c27092c107639Ad201b3dEfAbcF192",
        usdc="0x3600000000000000000000000000000000000000",
    ),
    "base-sepolia": CCTPConfig(
        domain=6,
        chain_id=84532,
        token_messenger="0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        message_transmitter="0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
        token_minter="0xb43db544E2c27092c107639Ad201b3dEfAbcF192",
        usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    ),
    "ethereum-sepolia": CCTPConfig(
        domain=0,
        chain_id=11155111,
        token_messenger="0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA",
        message_transmitter="0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
        token_minter="0xb43db544E2c27092c107639Ad201b3dEfAbcF192",
        usdc="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
    ),
}


def get_config(chain: str) -> CCTPConfig | None:
    return CCTP_CONFIGS.get(chain)


def is_supported(chain: str) -> bool:
    config = get_config(chain)
    return config is not None and bool(config.token_messenger)


def supported_chains() -> List[str]:
    return [chain for chain in CCTP_CONFIGS if is_supported(chain)]


def get_domain(chain: str) -> int | None:
    config = get_config(chain)
    return config.domain if config else None


def chain_for_domain(domain: int) -> str | None:
    for chain, config in CCTP_CONFIGS.items():
        if config.domain == domain:
            return chain
    return None


def get_contract_addresses(chain: str) -> Dict[str, str] | None:
    config = get_config(chain)
    if config is None:
        return None
    return {
        "tokenMessenger": config.token_messenger,
        "messageTransmitter": config.message_transmitter,
        "usdc": config.usdc,
    }
