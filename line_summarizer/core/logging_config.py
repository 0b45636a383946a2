"""
Structured logging configuration with structlog.

Every log line goes to STDOUT/STDERR so the container runtime collects it.
Production renders JSON for the log aggregator; development renders colored
console output. Standard-library loggers (uvicorn, httpx, aiohttp, pymongo)
are routed through the same processor chain so there is one format.
"""

import logging
import logging.config
import time
from typing import Any
import structlog
from structlog.types import EventDict, Processor
from line_summarizer.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with service name, version and environment."""
    event_dict["service"] = "line-summarizer"
    event_dict["app"] = settings.APP_NAME
    event_dict["version"] = settings.APP_VERSION
    event_dict["environment"] = settings.ENVIRONMENT
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


def add_trace_id_alias(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Mirror correlation_id into trace_id.

    The access log middleware binds correlation_id; the observability stack
    filters on trace_id.
    """
    if "correlation_id" in event_dict:
        event_dict["trace_id"] = event_dict["correlation_id"]
    elif "request_id" in event_dict:
        event_dict["trace_id"] = event_dict["request_id"]

    return event_dict


def censor_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact values whose key looks sensitive.

    LINE channel secrets, access tokens, Gemini API keys and bearer tokens
    must never reach the log aggregator.
    """
    sensitive_keys = ["password", "token", "api_key", "secret", "authorization", "signature"]

    for key in list(event_dict.keys()):
        if any(sensitive in key.lower() for sensitive in sensitive_keys):
            event_dict[key] = "***REDACTED***"

    return event_dict


def _use_json() -> bool:
    return settings.ENVIRONMENT == "production" or settings.LOG_JSON_FORMAT


def setup_logging() -> None:
    """
    Configure structlog and the standard logging module.

    Safe to call more than once; the last call wins.
    """
    log_level_name = settings.LOG_LEVEL.upper()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        add_severity_level,
        add_trace_id_alias,
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = (
        structlog.processors.JSONRenderer()
        if _use_json()
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": renderer,
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "level": log_level_name,
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "structured",
            },
            "error": {
                "level": "ERROR",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "formatter": "structured",
            },
        },
        "loggers": {
            "": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,
            },
            "line_summarizer": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,
            },
            "uvicorn": {
                "handlers": ["default"],
                "level": log_level_name,
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,  # Critical: prevents duplication
            },
            "uvicorn.access": {
                "handlers": [],  # Replaced by AccessLogMiddleware
                "level": "CRITICAL",
                "propagate": False,
            },
            # Third-party noise
            "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "httpcore": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "aiohttp": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "pymongo": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "asyncio": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
    })

    logger = get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=log_level_name,
        environment=settings.ENVIRONMENT,
        format="json" if _use_json() else "console",
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("session_closed", session_id="sess_...", reason="message_limit")
    """
    return structlog.get_logger(name)


class PerformanceLogger:
    """
    Context manager for performance timing and logging.

    Usage:
        with PerformanceLogger("summary_generation", logger, session_id=sid):
            result = await generator.generate(session, transcript)
    """

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger, **context):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.start_time = None
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.debug(
                "operation_completed",
                operation=self.operation,
                duration_ms=round(self.duration_ms, 2),
                **self.context
            )
        else:
            self.logger.error(
                "operation_failed",
                operation=self.operation,
                duration_ms=round(self.duration_ms, 2),
                error_type=exc_type.__name__,
                error=str(exc_val),
                **self.context
            )

        # Don't suppress exceptions
        return False
