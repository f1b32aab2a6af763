from relaybridge.abis.unified_vault import UNIFIED_VAULT_ABI

__all__ = ["UNIFIED_VAULT_ABI"]
