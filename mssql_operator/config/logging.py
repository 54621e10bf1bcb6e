"""
Structured logging for the operator and the sync job.

JSON lines in production (one object per event, ready for a log pipeline),
a colored console renderer everywhere else. Reconciliation passes bind
``namespace`` and ``name`` through structlog contextvars, so every event
emitted during a pass carries them.
"""
import logging
import sys
from typing import Any, List, Optional

import structlog
from structlog.types import EventDict, Processor

from mssql_operator.config.settings import settings

# Keys whose values never reach a log line
SECRET_KEYS = frozenset({"password", "db_password", "pwd", "secret", "connection_string"})
REDACTED = "**********"

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "kubernetes_asyncio": logging.WARNING,
    "kubernetes_asyncio.client.rest": logging.WARNING,
    "urllib3": logging.WARNING,
    "aiohttp.access": logging.WARNING,
}


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("operator", settings.app_name)
    event_dict.setdefault("version", settings.app_version)
    if settings.watch_namespace:
        event_dict.setdefault("watch_namespace", settings.watch_namespace)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials passed as log keys, wherever they come from."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


def configure_logging(json_logs: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_logs: Force JSON (or console) rendering; defaults to JSON in production
    """
    if json_logs is None:
        json_logs = settings.is_production

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_operator_context,
        redact_secrets,
    ]

    if json_logs:
        renderer: List[Processor] = [
            add_severity_level,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=shared_processors + renderer,  # type: ignore
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger named after the calling module."""
    return structlog.get_logger(name)
