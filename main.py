# /main.py
# Serves the bridge pipeline over HTTP.
import uvicorn

from relaybridge.core.api import create_app
from relaybridge.core.config import settings
from relaybridge.core.config_validator import validate as validate_config
from relaybridge.core.coordinator import build_coordinator
from relaybridge.core.logger import configure_logging, get_logger


def main():
    configure_logging()
    log = get_logger("RelayBridge.System")
    validate_config()
    log.info("RELAYBRIDGE_STARTING", network=settings.DESTINATION_NETWORK, port=settings.API_PORT)

    app = create_app(build_coordinator(settings))
    uvicorn.run(app, host="0.0.0.0", port=settings.API_PORT, log_config=None)
    log.warning("SYSTEM_SHUTDOWN_COMPLETE")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
