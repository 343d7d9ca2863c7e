"""Structured logging for webdeploy.

Log lines are structlog events routed through the standard library so that
boto3 and uvicorn output ends up in the same handlers. ``log_directory`` may be
empty to log to stdout only.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from webdeploy.config import settings

# Third-party loggers that flood INFO with per-request detail
NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")


def _add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict.setdefault("service", "webdeploy")
    event_dict.setdefault("cloud", settings.cloud_backend)
    return event_dict


def _handlers() -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if not settings.log_directory:
        return handlers

    log_dir = Path(settings.log_directory)
    if not log_dir.is_absolute():
        log_dir = Path.cwd() / log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers.append(logging.FileHandler(log_dir / settings.log_file_name, encoding="utf-8"))
    return handlers


def configure_logging() -> None:
    """Configure structlog and the standard library root logger."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level),
        handlers=_handlers(),
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, e.g. ``get_logger("orchestrator")``."""
    return structlog.get_logger(name)
