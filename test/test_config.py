# /test/test_config.py
import pytest

from relaybridge.core.config import Settings
from relaybridge.core.config_validator import validate

VAULT = "0x5555555555555555555555555555555555555555"


def test_defaults():
    s = Settings()
    assert s.RECEIPT_SOURCE_CHAIN_ID == 1918988905
    assert s.RECEIPT_DESTINATION_CHAIN_ID == 84532
    assert s.ORACLE_POLL_MAX_ATTEMPTS == 30
    assert s.rpc_url("base-sepolia") == "https://sepolia.base.org"


def test_legacy_env_names(monkeypatch):
    monkeypatch.setenv("UNIFIED_VAULT_BASE_SEPOLIA", VAULT)
    monkeypatch.setenv("DEPLOYER_PRIVATE_KEY", "0x" + "11" * 32)
    s = Settings()
    assert s.DESTINATION_VAULT_ADDRESS == VAULT
    assert s.PRIVATE_KEY.get_secret_value() == "0x" + "11" * 32


def test_validate_accepts_complete_config():
    validate(Settings(DESTINATION_VAULT_ADDRESS=VAULT))


@pytest.mark.parametrize("overrides", [
    {},
    {"DESTINATION_VAULT_ADDRESS": "0x123"},
    {"DESTINATION_VAULT_ADDRESS": VAULT, "DESTINATION_NETWORK": "unknown-net"},
    {"DESTINATION_VAULT_ADDRESS": VAULT, "SIGNER_ORDER": ["hsm"]},
])
def test_validate_rejects_incomplete_config(overrides, monkeypatch):
    monkeypatch.delenv("DESTINATION_VAULT_ADDRESS", raising=False)
    monkeypatch.delenv("UNIFIED_VAULT_BASE_SEPOLIA", raising=False)
    with pytest.raises(ValueError):
        validate(Settings(**overrides))
