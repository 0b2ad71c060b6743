"""Logging configuration for the application"""
import logging

from payhook.core.config import settings

# Named loggers for the billing pipeline; each follows LOG_LEVEL
PIPELINE_LOGGERS = ("webhook", "reconciliation", "scheduler", "audit", "security", "api_access")


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in PIPELINE_LOGGERS:
        logging.getLogger(name).setLevel(level)

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


# Export commonly used loggers
webhook_logger = logging.getLogger("webhook")
reconciliation_logger = logging.getLogger("reconciliation")
scheduler_logger = logging.getLogger("scheduler")
audit_logger = logging.getLogger("audit")
security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")
