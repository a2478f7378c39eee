"""Logfire observability initialization and instrumentation."""

import logging

import logfire

from conveyor import __version__
from conveyor.config import Settings

logger = logging.getLogger(__name__)


def initialize_logfire(settings: Settings, app=None) -> bool:
    """
    Initialize Logfire tracing for the service.

    Call once at startup, before the first run is triggered. Instruments:
    - HTTPX clients (webhook notifier, CLI client)
    - The FastAPI app, when one is given
    - Python logging (bridged to Logfire)

    Observability is optional: a missing token or any setup failure is logged
    and the service keeps running.

    Returns:
        True when Logfire was configured.
    """
    if not settings.logfire_token:
        logger.debug("Logfire token not set - observability disabled")
        return False

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name="conveyor",
            service_version=__version__,
        )

        logfire.instrument_httpx()

        if app is not None:
            try:
                logfire.instrument_fastapi(app)
            except Exception as fastapi_error:
                logger.debug(f"FastAPI instrumentation skipped: {fastapi_error}")

        logging.getLogger().addHandler(logfire.LogfireLoggingHandler())

        logger.info("✓ Logfire tracking initialized")
        return True

    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")
        return False
