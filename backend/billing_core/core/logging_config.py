"""
Logging setup for the billing pipeline.

Records may carry billing context (provider, subscription id, inbound event
key, request id) through ``extra=`` or :func:`get_event_logger`. Credentials
that end up in a message (bearer tokens, webhook signatures, push tokens) are
masked before any handler sees them.
"""

import asyncio
import functools
import json
import logging
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import LoggingConfig, get_config

CONTEXT_FIELDS = ("provider", "subscription_id", "event_key", "request_id")

# Quieted unless the root level is DEBUG
NOISY_LOGGERS = ("uvicorn.access", "aiohttp.access", "aiohttp.client", "sqlalchemy.engine", "asyncio")

_SECRET_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-_.]+"),
    re.compile(r"(?i)((?:signature|token|secret|assertion)=)[^\s&,]+"),
]


def redact(message: str) -> str:
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub(r"\1***", message)
    return message


class RedactingFilter(logging.Filter):
    """Masks credentials in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with billing context when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value not in (None, ""):
                payload[key] = str(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class ColorFormatter(logging.Formatter):
    """Console formatter that colours the level and appends billing context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{key}={getattr(record, key)}" for key in CONTEXT_FIELDS if getattr(record, key, None)
        )
        if context:
            line = f"{line} [{context}]"
        color = self.LEVEL_COLORS.get(record.levelname)
        return f"{color}{line}{self.RESET}" if color else line


def _file_handler(path: str, config: LoggingConfig, formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            filename=path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        logging.getLogger(__name__).warning(f"File logging disabled, cannot open {path}: {e}")
        return None
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None
) -> None:
    """
    Configure the root logger.

    Args:
        config: Logging configuration, defaults to the application config
        log_file: Rotating log file, overrides ``config.file_path``
        json_format: Emit JSON lines, overrides ``config.json_format``
    """
    config = config or get_config().logging
    if json_format is None:
        json_format = config.json_format

    plain: logging.Formatter = (
        JSONFormatter() if json_format else logging.Formatter(config.format, datefmt=config.date_format)
    )
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(plain if json_format else ColorFormatter(config.format, datefmt=config.date_format))

    handlers: List[logging.Handler] = [console]
    path = log_file or config.file_path
    if path:
        file_handler = _file_handler(path, config, plain)
        if file_handler is not None:
            handlers.append(file_handler)

    redacting = RedactingFilter()
    for handler in handlers:
        handler.addFilter(redacting)

    logging.basicConfig(level=config.level.value, handlers=handlers, force=True)

    if config.level.value != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={config.level.value} json={json_format} file={path or '-'}"
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class EventLoggerAdapter(logging.LoggerAdapter):
    """Adds fixed billing context to every record, keeping per-call extras."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_event_logger(name: str, provider: str, event_key: Optional[str] = None) -> EventLoggerAdapter:
    """Logger that tags records with the provider and inbound event key."""
    return EventLoggerAdapter(logging.getLogger(name), {"provider": provider, "event_key": event_key})


def log_execution_time(logger: logging.Logger, warn_after: Optional[float] = None):
    """
    Decorator to log coroutine execution time.

    Args:
        logger: Logger to write to
        warn_after: Log at WARNING instead of DEBUG when slower than this many seconds
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            loop = asyncio.get_running_loop()
            start = loop.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = loop.time() - start
                level = logging.WARNING if warn_after is not None and duration > warn_after else logging.DEBUG
                logger.log(level, f"{func.__qualname__} took {duration:.3f}s")
        return wrapper
    return decorator
