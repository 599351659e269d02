"""Logging configuration utilities for the Service Registry."""
import logging
import os

# root of every logger name in this service, e.g. "Service-Registry.Health"
SERVICE_NAME = "Service-Registry"


def setup_logging(level: str | None = None) -> None:
    """Configure root logging based on the LOG_LEVEL environment variable."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def get_logger(component: str) -> logging.Logger:
    """Return the logger for one component of the service."""
    return logging.getLogger(f"{SERVICE_NAME}.{component}")
