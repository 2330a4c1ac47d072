"""
structlog setup for DemBot.

Every record goes to stderr and to a daily file under ``general.logs_dir``.
The active acquisition category is merged in from contextvars, the session
cookie is never written out, and the cache sweep's debug chatter is dropped.
"""

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from structlog.types import Processor

from dembot.utils.config import get_settings, resolve_path

# Event keys that can carry the PowerPlay session cookie
SECRET_KEYS = frozenset({"cookie", "cookies", "ppusa_session", "set_cookie"})


def _stamp(logger: logging.Logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(UTC).isoformat().replace("+00:00", "Z")
    event_dict["level"] = method_name.upper()
    return event_dict


def _redact_secrets(logger: logging.Logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask cookie values before they reach a renderer."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _filter_cache_sweep(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    # The sweep runs every minute
    if method_name == "debug" and event_dict.get("event", "").startswith("Cache sweep"):
        raise structlog.DropEvent
    return event_dict


def configure_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool | None = None,
) -> None:
    """Configure structlog on top of stdlib handlers.

    Arguments left as None are read from the ``general`` settings section.
    """
    general = get_settings().general
    level = log_level or general.log_level
    if json_format is None:
        json_format = general.json_logs
    if log_file is None:
        log_dir = resolve_path(general.logs_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"dembot_{datetime.now():%Y%m%d}.log"

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _stamp,
        _filter_cache_sweep,
        _redact_secrets,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields (e.g. ``category``) to every later log call in this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    AcquisitionService.acquire() wraps each run in
    ``LogContext(category=...)`` so executor and pool logs carry it.
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        bind_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)


_logging_configured = False


def ensure_logging_configured() -> None:
    """Configure logging once per process."""
    global _logging_configured
    if not _logging_configured:
        configure_logging()
        _logging_configured = True
