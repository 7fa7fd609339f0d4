"""Logging configuration module for all microservices."""

import sys
import threading
from typing import Optional

from loguru import logger as loguru_logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[service]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[service]} | {name}:{function}:{line} - {message}"

_lock = threading.Lock()
_configured: Optional[tuple] = None


def setup_service_logger(
    service_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = False,
):
    """Configure the process-wide sinks and return a logger bound to a service.

    Sinks are only replaced when the requested configuration differs from the
    current one, so modules may call this freely at import time.

    Args:
        service_name: Name of the service (e.g., 'order-ingest')
        log_level: Logging level (default: INFO)
        log_file: Optional path to a rotating log file
        json_logs: Emit one JSON document per record instead of colored text

    Returns:
        logger: loguru logger bound with ``service=service_name``
    """
    global _configured

    requested = (log_level.upper(), log_file, json_logs)
    with _lock:
        if _configured != requested:
            loguru_logger.remove()
            loguru_logger.configure(extra={"service": "-"})

            if json_logs:
                loguru_logger.add(sys.stderr, level=requested[0], serialize=True, enqueue=True)
            else:
                loguru_logger.add(
                    sys.stderr,
                    level=requested[0],
                    format=CONSOLE_FORMAT,
                    colorize=True,
                    enqueue=True,
                    backtrace=True,
                    diagnose=False,
                )

            if log_file:
                loguru_logger.add(
                    log_file,
                    level=requested[0],
                    format=FILE_FORMAT,
                    rotation="10 MB",
                    retention="1 week",
                    compression="gz",
                    enqueue=True,
                )
            _configured = requested

    return loguru_logger.bind(service=service_name)


def get_kafka_logger(service_name: str):
    """Get a logger for Kafka operations without touching the configured sinks.

    Args:
        service_name: Name of the service

    Returns:
        logger: Logger bound with Kafka context
    """
    return loguru_logger.bind(service=f"{service_name}.kafka")
