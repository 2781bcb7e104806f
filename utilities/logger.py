"""
Structured logging system using structlog.
Provides structured logging with different output formats and levels.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional, Union

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[Union[str, Path]] = None,
    debug: bool = False
) -> None:
    """
    Set up structured logging with configurable output formats.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_file: Optional log file path
        debug: Add call-site information to every event
    """

    # Cron mails whatever lands on stdout, so logs go to stderr
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if debug:
        processors.append(structlog.processors.CallsiteParameterAdder())

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter('%(message)s'))

        logging.getLogger().addHandler(file_handler)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Logging system initialized",
        level=log_level,
        format=log_format,
        file=str(log_file) if log_file else None,
        debug=debug
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class PortalLogger:
    """
    Specialized logger for cache and fetch operations with context management.
    """

    def __init__(self, name: str = "portal"):
        self.logger = structlog.get_logger(name)
        self.context = {}

    def bind_context(self, **kwargs) -> 'PortalLogger':
        """
        Bind context variables to the logger.

        Args:
            **kwargs: Context variables to bind

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    def clear_context(self) -> 'PortalLogger':
        """Clear all context variables."""
        self.context.clear()
        return self

    def log_cache_hit(self, key: Any, level: Any) -> None:
        self.logger.debug("Cache hit", key=str(key), level=_name(level), **self.context)

    def log_cache_miss(self, key: Any, cached_level: Any, wanted_level: Any) -> None:
        """Log a lookup that has to go to the network."""
        self.logger.info(
            "Cache miss",
            key=str(key),
            cached_level=_name(cached_level),
            wanted_level=_name(wanted_level),
            **self.context
        )

    def log_fetch(self, key: Any, level: Any, fields: Optional[Any] = None) -> None:
        self.logger.debug(
            "Fetching entity",
            key=str(key),
            level=_name(level),
            fields=sorted(fields) if fields else None,
            **self.context
        )

    def log_retry(self, operation: str, attempt: int, max_attempts: int, delay: float, error: str) -> None:
        """Log retry attempt."""
        self.logger.warning(
            "Retrying request",
            operation=operation,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_seconds=delay,
            error=error,
            **self.context
        )

    def log_stale_fallback(self, key: Any, cached_level: Any, wanted_level: Any, error: str) -> None:
        """Log that a cached value is served because the fetch failed."""
        self.logger.warning(
            "Serving cached value after failed fetch",
            key=str(key),
            cached_level=_name(cached_level),
            wanted_level=_name(wanted_level),
            error=error,
            **self.context
        )

    def log_error(self, error: str, key: Optional[Any] = None, retry_count: Optional[int] = None) -> None:
        """Log error with context."""
        self.logger.error(
            "Portal error occurred",
            error=error,
            key=str(key) if key is not None else None,
            retry_count=retry_count,
            **self.context
        )


def _name(level: Any) -> Any:
    return getattr(level, "name", level)
