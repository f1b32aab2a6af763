# /relaybridge/core/validation.py
# Input checks run before any ledger or network access.
import re

from relaybridge.core.errors import ValidationError

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
HEX_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})+$")

# Amounts, nonces and chain ids are uint256 on the destination contract.
UINT256_MAX = 2**256 - 1


def require_address(value: str | None, field: str = "user_address") -> str:
    if not value or not ADDRESS_RE.match(value):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return value


def require_tx_hash(value: str | None, field: str = "tx_hash") -> str:
    if not value or not TX_HASH_RE.match(value):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return value


def require_hex(value: str | None, field: str) -> str:
    if not value or not HEX_RE.match(value):
        raise ValidationError(f"{field} must be non-empty 0x-prefixed hex")
    return value


def require_uint256(value: int, field: str) -> int:
    if value > UINT256_MAX:
        raise ValidationError(f"{field} does not fit in uint256")
    return value


def require_positive_amount(value) -> int:
    """Amounts are integers in the token's smallest unit."""
    if isinstance(value, (bool, float)):
        raise ValidationError(f"Amount must be an integer, got {value!r}")
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Amount must be an integer, got {value!r}")
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return require_uint256(amount, "Amount")


def require_nonce(value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Nonce must be a non-negative integer, got {value!r}")
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise ValidationError(f"Nonce must be a non-negative decimal integer, got {value!r}")
        return require_uint256(int(value.strip()), "Nonce")
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"Nonce must be a non-negative integer, got {value!r}")
    return require_uint256(value, "Nonce")


def require_chain_id(value, field: str = "source_chain_id") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer, got {value!r}")
    return require_uint256(value, field)
