# /relaybridge/core/logger.py
import logging
import structlog
from structlog.contextvars import bind_contextvars
import sentry_sdk
from prometheus_client import Counter
from relaybridge.core.config import settings
import json
import hmac
import hashlib
import os

# --- Prometheus Metrics ---
DEPOSITS_RECORDED = Counter("relaybridge_deposits_recorded_total", "Deposits recorded in the ledger", ["path"])
DEPOSITS_CONSUMED = Counter("relaybridge_deposits_consumed_total", "Deposits consumed after redemption", ["path"])
ATTESTATIONS_ACQUIRED = Counter("relaybridge_attestations_acquired_total", "Attestations acquired", ["path"])
REDEMPTIONS_SUBMITTED = Counter("relaybridge_redemptions_submitted_total", "Redemption transactions broadcast", ["network"])
REDEMPTION_FAILURES = Counter("relaybridge_redemption_failures_total", "Redemption attempts that failed", ["network", "stage"])
SIGNER_FALLBACKS = Counter("relaybridge_signer_fallbacks_total", "Signer backends skipped at initialization", ["signer"])
ERRORS_LOGGED = Counter("relaybridge_errors_logged_total", "Total number of errors logged", ["level"])

SIGNING_KEY = (
    settings.LOG_SIGNING_KEY.get_secret_value().encode()
    if settings.LOG_SIGNING_KEY
    else b"insecure"
)

# Module-level so tests can monkeypatch it.
AUDIT_FILE = os.path.join(settings.SESSION_DIR, "audit.log")


def count_errors(logger, method_name: str, event_dict: dict) -> dict:
    if method_name in ("error", "critical", "exception"):
        ERRORS_LOGGED.labels(method_name).inc()
    return event_dict


def sign_and_append(logger, method_name: str, event_dict: dict) -> dict:  # type: ignore[override]
    """Structlog processor that signs each event and appends it to the audit log.

    The audit log is the only durable trace of consumed deposits (the ledger
    deletes them), so every line is ``payload|hmac``.
    """
    # Deterministic key order keeps the signature reproducible.
    payload = json.dumps(event_dict, sort_keys=True, default=str)
    sig = hmac.new(SIGNING_KEY, payload.encode(), hashlib.sha256).hexdigest()

    audit_file = str(AUDIT_FILE)
    try:
        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(payload + "|" + sig + "\n")
    except FileNotFoundError:
        os.makedirs(os.path.dirname(audit_file), exist_ok=True)
        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(payload + "|" + sig + "\n")

    event_dict["signature"] = sig
    return event_dict


def configure_logging():
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN.get_secret_value(), traces_sample_rate=1.0)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            count_errors,
            sign_and_append,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def bind_request(request_id: str, **extra):
    bind_contextvars(request_id=request_id, **extra)


configure_logging()
log = get_logger("RelayBridge.System")
