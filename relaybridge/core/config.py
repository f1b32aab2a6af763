# /relaybridge/core/config.py
import sys
from decimal import Decimal
from typing import Dict, List, Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RPC_URLS = {
    "base-sepolia": "https://sepolia.base.org",
    "ethereum-sepolia": "https://sepolia.gateway.tenderly.co",
    "base": "https://mainnet.base.org",
    "ethereum": "https://eth.llamarpc.com",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Destination network and the vault that receives redemptions
    DESTINATION_NETWORK: str = "base-sepolia"
    DESTINATION_VAULT_ADDRESS: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DESTINATION_VAULT_ADDRESS", "UNIFIED_VAULT_BASE_SEPOLIA"),
    )

    # RPC endpoints, keyed by network name
    RPC_URLS: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    POA_NETWORKS: List[str] = []
    RPC_TIMEOUT_SECONDS: float = 30.0
    CONFIRMATION_TIMEOUT_SECONDS: float = 120.0
    GAS_LIMIT_MULTIPLIER: Decimal = Decimal("1.20")

    # Oracle (CCTP attestation service)
    ORACLE_BASE_URL: str = "https://iris-api-sandbox.circle.com/v2/messages"
    ORACLE_POLL_INTERVAL_SECONDS: float = 5.0
    ORACLE_POLL_MAX_ATTEMPTS: int = 30
    ORACLE_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Signed-receipt path
    RECEIPT_SOURCE_CHAIN_ID: int = 1918988905
    RECEIPT_DESTINATION_CHAIN_ID: int = 84532
    RECEIPT_MESSAGE_ENVELOPE: Literal["hex_text", "bytes32"] = "hex_text"
    TRUSTED_SIGNER_ADDRESS: str | None = None

    # Signers
    SIGNER_ORDER: List[str] = ["custody", "local"]
    CDP_API_KEY_ID: SecretStr | None = None
    CDP_API_KEY_SECRET: SecretStr | None = None
    CDP_WALLET_SECRET: SecretStr | None = None
    CDP_ACCOUNT_NAME: str = "tee-account"
    CDP_ACCOUNT_ADDRESS: str | None = None
    PRIVATE_KEY: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("PRIVATE_KEY", "DEPLOYER_PRIVATE_KEY"),
    )

    # Ledger storage
    LEDGER_BACKEND: Literal["file", "redis"] = "file"
    DATA_DIR: str = "data"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Operational Settings
    LOG_LEVEL: str = "INFO"
    LOG_SIGNING_KEY: SecretStr | None = None
    SENTRY_DSN: SecretStr | None = None
    SESSION_DIR: str = "/tmp/relaybridge_session"  # audit log lives here
    API_PORT: int = 8080
    CONTROL_API_TOKEN: str | None = None

    def rpc_url(self, network: str) -> str | None:
        return self.RPC_URLS.get(network)


try:
    settings = Settings()
except Exception as e:
    # Late import to avoid circular dependency only for logging the failure
    try:
        from relaybridge.core.logger import get_logger, configure_logging
        configure_logging()
        log = get_logger("RelayBridge.Config")
        log.critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
    except Exception:
        print("FAILED_TO_LOAD_SETTINGS", e)
    sys.exit(1)
