# /relaybridge/core/errors.py
"""Error taxonomy shared by the ledger, attestation sources, signers and executor.

Each error carries the HTTP status the API layer answers with; nothing below
the API layer turns these into responses.
"""
from typing import Dict


class BridgeError(Exception):
    status_code = 500
    # set by the executor to the failed redemption record
    attempt = None

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(BridgeError):
    """Malformed address, hash, amount or payload. Never retried."""
    status_code = 400


class ConflictError(BridgeError):
    """An unredeemed deposit with the same natural key already exists for the user."""
    status_code = 409


class NotFoundError(BridgeError):
    """Unknown id or natural key, or the deposit was already consumed."""
    status_code = 404


class AttestationPending(BridgeError):
    status_code = 202


class AttestationFailed(BridgeError):
    status_code = 502


class AttestationTimeout(BridgeError):
    status_code = 504

    def __init__(self, message: str = "", attempts: int = 0):
        super().__init__(message or f"Attestation not available after {attempts} attempts")
        self.attempts = attempts


class SignatureMismatch(BridgeError):
    status_code = 422

    def __init__(self, expected: str, recovered: str):
        super().__init__(f"Signature does not match trusted signer. Expected: {expected}, Recovered: {recovered}")
        self.expected = expected
        self.recovered = recovered


class GasEstimationFailed(BridgeError):
    """Estimation reverted. Usually already redeemed or an invalid proof; do not retry blindly."""
    status_code = 422

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SubmissionFailed(BridgeError):
    """Network or signer failure while broadcasting. Safe to retry with a fresh estimate."""
    status_code = 502


class SignerUnavailable(BridgeError):
    status_code = 503

    def __init__(self, message: str = "", causes: Dict[str, str] | None = None):
        self.causes = causes or {}
        if not message:
            details = "; ".join(f"{name}: {cause}" for name, cause in self.causes.items())
            message = f"No signer could be initialized ({details})" if details else "No signer configured"
        super().__init__(message)


class ConfirmationTimeout(BridgeError):
    status_code = 504


class TransactionReverted(BridgeError):
    status_code = 502
