"""
Application logging setup shared by every tracker module.

Provides:
- get_logger: named logger with console output (plain, colored or JSON)
- setup_application_logging: root application logger with rotating file output
- log_performance: decorator timing sync and async callables
- log_context: context manager logging entry/exit of a block
"""

import functools
import inspect
import json
import logging
import sys
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Attributes present on every LogRecord; anything else came in through `extra`
_RESERVED_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "asctime", "taskName",
}

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, including `extra` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends `extra` fields as key=value pairs."""

    def __init__(self, fmt: str = DEFAULT_FORMAT, colored: bool = False):
        super().__init__(fmt)
        self.colored = colored

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        extras = _extra_fields(record)
        if extras:
            text += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        if self.colored:
            color = _LEVEL_COLORS.get(record.levelno, "")
            text = f"{color}{text}{_RESET}"
        return text


def get_logger(
        name: str,
        level: int = logging.INFO,
        json_format: bool = False,
        colored_console: bool = False,
) -> logging.Logger:
    """
    Get a named logger with a single console handler attached.

    Args:
        name: Logger name
        level: Logging level for the logger
        json_format: Emit JSON lines instead of plain text
        colored_console: Colorize plain text output by level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not any(getattr(h, "_tracker_console", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        if json_format:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(ContextFormatter(colored=colored_console))
        handler._tracker_console = True
        logger.addHandler(handler)
        # Root handlers (file output) still receive the record
        logger.propagate = True

    return logger


def setup_application_logging(
        app_name: str,
        log_level: int = logging.INFO,
        log_dir: str = "logs",
        enable_performance_logging: bool = True,
        max_file_size: int = 10 * 1024 * 1024,
        backup_count: int = 5,
) -> logging.Logger:
    """
    Configure root logging for the application and return its logger.

    Args:
        app_name: Name of the application (used for the logger and log file)
        log_level: Root logging level
        log_dir: Directory for rotating log files
        enable_performance_logging: Whether log_performance timings are emitted
        max_file_size: Maximum size of a log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The application logger
    """
    root = logging.getLogger()
    root.setLevel(log_level)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(
            log_path / f"{app_name}.log",
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)

    PerformanceLogger.enabled = enable_performance_logging

    return get_logger(app_name, level=log_level, colored_console=True)


class PerformanceLogger:
    """Collects and logs execution timings."""

    enabled = True
    slow_threshold_ms = 1000.0

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger("performance")
        self.start: Optional[float] = None

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.report(failed=exc_type is not None)
        return False

    def report(self, failed: bool = False) -> float:
        elapsed_ms = (time.perf_counter() - (self.start or time.perf_counter())) * 1000
        if self.enabled:
            level = logging.WARNING if elapsed_ms >= self.slow_threshold_ms else logging.DEBUG
            self.logger.log(
                level,
                "performance_measurement",
                extra={
                    "event": "performance",
                    "operation": self.name,
                    "duration_ms": round(elapsed_ms, 3),
                    "failed": failed,
                },
            )
        return elapsed_ms


def log_performance(name: str) -> Callable:
    """Decorator timing a sync or async callable under the given operation name."""

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with PerformanceLogger(name):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with PerformanceLogger(name):
                return func(*args, **kwargs)

        return wrapper

    return decorator


@contextmanager
def log_context(logger: logging.Logger, message: str, level: int = logging.DEBUG):
    """Log the start and end (or failure) of a block of work."""
    start = time.perf_counter()
    logger.log(level, f"▶ {message}")
    try:
        yield
    except Exception:
        logger.error(f"✖ {message} failed after {time.perf_counter() - start:.4f}s", exc_info=True)
        raise
    logger.log(level, f"✔ {message} finished in {time.perf_counter() - start:.4f}s")
