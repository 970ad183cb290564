"""
Structured logging setup for the attribution batch jobs.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def bind_run_context(**values: Any) -> None:
    """Attach fields (job, run_id) to every log line until cleared."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_job_result(job: str, result: dict[str, Any]) -> None:
    """Log batch job outcomes with consistent fields."""
    logger = get_logger("jobs")

    log_data = {
        "job": job,
        "complete": bool(result.get("complete")),
        "event_type": "job_result",
        "result": result,
    }

    if result.get("error"):
        logger.error("Batch job stopped on error", **log_data)
    elif log_data["complete"]:
        logger.info("Batch job completed", **log_data)
    else:
        logger.warning("Batch job partially completed - run again to continue", **log_data)
