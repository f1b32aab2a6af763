# /relaybridge/core/config_validator.py
# Run at startup to validate the redemption config before serving requests.
from relaybridge.core.config import Settings, settings as default_settings
from relaybridge.core.logger import log
from relaybridge.core.validation import ADDRESS_RE


def validate(settings: Settings = default_settings):
    log.info("--- CONFIG VALIDATION START ---")
    errors = []

    if not settings.DESTINATION_VAULT_ADDRESS:
        errors.append("Missing required configuration: DESTINATION_VAULT_ADDRESS")
    elif not ADDRESS_RE.match(settings.DESTINATION_VAULT_ADDRESS):
        errors.append("DESTINATION_VAULT_ADDRESS is not a valid address")

    if not settings.rpc_url(settings.DESTINATION_NETWORK):
        errors.append(f"Missing RPC URL for destination network: {settings.DESTINATION_NETWORK}")

    if settings.TRUSTED_SIGNER_ADDRESS and not ADDRESS_RE.match(settings.TRUSTED_SIGNER_ADDRESS):
        errors.append("TRUSTED_SIGNER_ADDRESS is not a valid address")

    unknown = [s for s in settings.SIGNER_ORDER if s not in ("custody", "local")]
    if unknown or not settings.SIGNER_ORDER:
        errors.append(f"SIGNER_ORDER must list 'custody' and/or 'local', got {settings.SIGNER_ORDER}")

    # Signers are only checked at first use; missing credentials are a warning here.
    if "custody" in settings.SIGNER_ORDER and not (settings.CDP_API_KEY_ID and settings.CDP_API_KEY_SECRET):
        log.warning("CUSTODY_SIGNER_NOT_CONFIGURED")
    if "local" in settings.SIGNER_ORDER and not settings.PRIVATE_KEY:
        log.warning("LOCAL_SIGNER_NOT_CONFIGURED")

    if errors:
        for error in errors:
            log.critical(error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("--- CONFIG VALIDATION PASSED ---")


if __name__ == "__main__":
    validate()
