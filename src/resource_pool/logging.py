"""Logging configuration for the resource pool."""

import logging
import sys
from collections import Counter
from typing import Any, Dict, Optional

import structlog
from structlog.types import FilteringBoundLogger

from .config import AppConfig


class LogLevelCounter:
    """structlog processor that counts emitted events per level."""

    def __init__(self) -> None:
        self._counts: Counter = Counter()

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        self._counts[method_name.upper()] += 1
        return event_dict

    def stats(self) -> Dict[str, Any]:
        return {"total": sum(self._counts.values()), "by_level": dict(self._counts)}

    def reset(self) -> None:
        self._counts.clear()


_level_counter = LogLevelCounter()


def configure_logging(settings: Optional[AppConfig] = None) -> FilteringBoundLogger:
    """Configure structured logging for the application."""
    settings = settings or AppConfig()
    level = getattr(logging, settings.log_level.upper())

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _level_counter,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if settings.log_format == "json":
        processors.extend([
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ])
    else:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=settings.environment != "production")
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(name: str) -> FilteringBoundLogger:
    """Get a logger instance for the given name."""
    return structlog.get_logger(name)


def get_log_stats() -> Dict[str, Any]:
    """Counts of events emitted since configuration, by level."""
    return _level_counter.stats()


def reset_log_stats() -> None:
    _level_counter.reset()


# Initialize logging
logger = configure_logging()
