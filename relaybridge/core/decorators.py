# /relaybridge/core/decorators.py
# Reusable decorators for operational resilience.
import asyncio
import logging

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential, before_sleep_log

from relaybridge.core.logger import get_logger

log = get_logger(__name__)

TRANSIENT_NETWORK_ERRORS = (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)

# Only for idempotent reads. Gas estimation and submission are never retried.
retriable_network_call = retry(
    retry=retry_if_exception_type(TRANSIENT_NETWORK_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
)
