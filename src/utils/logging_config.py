"""Logging configuration for Narrator."""

import logging
import sys
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Default log file location
DEFAULT_LOG_FILE = Path(__file__).parent.parent.parent / "logs" / "narrator.log"

# Per-task correlation ID; each generation request runs in its own asyncio task
_correlation_id: ContextVar[str | None] = ContextVar("narrator_correlation_id", default=None)


class ContextFilter(logging.Filter):
    """Add context information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record if available."""
        record.correlation_id = _correlation_id.get() or "-"
        return True


# Global context filter instance
_context_filter = ContextFilter()


class FlushingRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that flushes immediately after each log."""

    def emit(self, record: logging.LogRecord) -> None:
        """Write the record and flush so tail -f sees it right away."""
        super().emit(record)
        self.flush()


def setup_logging(level: str = "INFO", log_file: str | None = "default") -> None:
    """Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: File path for logs. "default" uses logs/narrator.log,
                  None disables file logging.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Filter must be on HANDLERS, not logger, for child logger records
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file == "default":
        log_path: Path | None = DEFAULT_LOG_FILE
    elif log_file:
        log_path = Path(log_file)
    else:
        log_path = None

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Max 10MB per file, keep 5 backup files (50MB total)
        file_handler = FlushingRotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

        root_logger.info("Logging to file: %s (max 10MB, 5 backups)", log_path)

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def set_log_level(level: str) -> None:
    """Change the level of the root logger and all of its handlers.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers:
        handler.setLevel(log_level)
    root_logger.info("Log level set to %s", logging.getLevelName(log_level))


def get_correlation_id() -> str | None:
    """Return the correlation ID active in the current context, if any."""
    return _correlation_id.get()


@contextmanager
def log_context(correlation_id: str | None = None) -> Generator[str]:
    """Context manager for setting correlation ID in logs.

    Args:
        correlation_id: Optional correlation ID. If not provided, generates a new UUID.

    Yields:
        The correlation ID being used.

    Example:
        with log_context("request-123"):
            logger.info("Processing request")  # Will include correlation_id in log
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())[:8]

    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


@contextmanager
def log_performance(logger: logging.Logger, operation: str) -> Generator[None]:
    """Context manager for logging operation performance.

    Args:
        logger: Logger instance to use
        operation: Name of the operation being timed

    Example:
        with log_performance(logger, "translation"):
            await translate()  # Will log duration after completion
    """
    start_time = time.perf_counter()
    logger.debug("%s: Starting", operation)
    try:
        yield
    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.warning("%s: Failed after %.2fs - %s", operation, duration, e)
        raise
    else:
        duration = time.perf_counter() - start_time
        logger.info("%s: Completed in %.2fs", operation, duration)
