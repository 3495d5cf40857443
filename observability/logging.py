from __future__ import annotations
import asyncio
import functools
import logging
import sys
import json
import time
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from pathlib import Path

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'message',
}

NOISY_LOGGERS = ("uvicorn", "httpx", "httpcore", "urllib3", "apscheduler", "aiohttp.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra`` fields carried through."""

    def __init__(self, service_name: str = "memfoundry"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Single-line console format; context fields are appended as key=value."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        message = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        context = {
            key[4:]: value for key, value in record.__dict__.items()
            if key.startswith("ctx_")
        }
        if context:
            message += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        if self.use_colors and record.levelname in self.COLORS:
            message = f"{self.COLORS[record.levelname]}{message}{self.RESET}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def setup_logging(
    level: str = "INFO",
    service_name: str = "memfoundry",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Value of the ``service`` field in JSON output
        log_file: Optional path; file output is always JSON
        use_json: JSON instead of the colored console format
        use_colors: ANSI colors for the console format
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StructuredLogger:
    """Logger wrapper that attaches context (``ctx_*`` fields) to every record."""

    def __init__(self, name: str, **default_context):
        self.logger = logging.getLogger(name)
        self.default_context = default_context

    def bind(self, **context) -> "StructuredLogger":
        """Return a logger with additional default context."""
        return StructuredLogger(self.logger.name, **{**self.default_context, **context})

    def _extra(self, context: Dict[str, Any]) -> Dict[str, Any]:
        full_context = {**self.default_context, **context}
        return {f"ctx_{k}": v for k, v in full_context.items()}

    def _log(self, level: int, message: str, **context) -> None:
        self.logger.log(level, message, extra=self._extra(context))

    def debug(self, message: str, **context) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        self.logger.exception(message, extra=self._extra(context))


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)


def log_performance(logger_name: Optional[str] = None, threshold_ms: float = 1000.0):
    """Decorator that warns when a coroutine function runs slower than ``threshold_ms``."""
    def decorator(func):
        logger = get_logger(logger_name or func.__module__)
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"log_performance expects a coroutine function, got {func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start_time) * 1000
                if duration_ms > threshold_ms:
                    logger.warning(
                        f"Slow call: {func.__qualname__} took {duration_ms:.0f}ms",
                        extra={"duration_ms": duration_ms, "threshold_ms": threshold_ms},
                    )

        return wrapper
    return decorator
