"""Logging configuration for the application"""
import logging

from paygate.core.config import settings


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Payment audit trails stay on even when LOG_LEVEL is raised
    for name in ("webhook", "reconciliation"):
        logging.getLogger(name).setLevel(min(logging.INFO, logging.getLogger().level))


# Audit loggers shared across modules
security_logger = logging.getLogger("security")
webhook_logger = logging.getLogger("webhook")
reconciliation_logger = logging.getLogger("reconciliation")
api_access_logger = logging.getLogger("api_access")
