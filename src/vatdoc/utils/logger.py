"""
Logging setup and the audit port.

Components log diagnostics through module loggers as usual. Business events
that end up in an audit trail (strategy outcomes, manual-review decisions) go
through an AuditPort, which redacts sensitive fields before anything is emitted.
"""

import re
import sys
import time
import logging
import functools
from abc import ABC, abstractmethod
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "vatdoc.audit"

REDACTED = "[REDACTED]"

DEFAULT_REDACT_FIELDS = frozenset({
    "vat_number", "vatnumber", "tax_id", "email", "iban", "api_key",
    "authorization", "password", "token", "extracted_text", "text",
})

_VALUE_PATTERNS = [
    re.compile(r"\b[A-Z]{2}\s?[0-9]{7}[A-Z]{1,2}\b"),  # EU-style VAT numbers
    re.compile(r"\b[A-Z]{2}[0-9]{2}(?:\s?[A-Z0-9]{4}){3,7}\b"),  # IBAN
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),  # email
    re.compile(r"\b(?:sk|nvapi|key)-[A-Za-z0-9_\-]{8,}\b"),  # API keys
]


def setup_logging(
    log_level: Union[int, str] = logging.INFO,
    log_dir: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5
):
    """
    Configure root logging for the CLI and batch jobs.

    Args:
        log_level: Logging level name or number
        log_dir: Directory for rotating log files (console only when None)
        max_bytes: Maximum size of a log file before rotation
        backup_count: Number of rotated files to keep
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = []

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path / f"vatdoc_{datetime.now().strftime('%Y%m%d')}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.debug(f"Logging initialized at level {logging.getLevelName(log_level)}")


def log_execution_time(func):
    """Decorator to log function execution time."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        func_logger = logging.getLogger(func.__module__)
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            func_logger.debug(f"{func.__name__} executed in {time.time() - start_time:.3f}s")
            return result
        except Exception as e:
            func_logger.error(f"{func.__name__} failed after {time.time() - start_time:.3f}s: {e}")
            raise
    return wrapper


def redact_value(value: str) -> str:
    for pattern in _VALUE_PATTERNS:
        value = pattern.sub(REDACTED, value)
    return value


def redact(data: Any, fields: Iterable[str] = DEFAULT_REDACT_FIELDS) -> Any:
    """
    Return a copy of data with sensitive keys and values masked.

    Args:
        data: Mapping, sequence or scalar to sanitise
        fields: Lower-case key names whose values are always masked

    Returns:
        Sanitised copy
    """
    fields = frozenset(f.lower() for f in fields)
    if isinstance(data, dict):
        return {
            k: (REDACTED if str(k).lower() in fields else redact(v, fields))
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple, set)):
        return [redact(v, fields) for v in data]
    if isinstance(data, str):
        return redact_value(data)
    return data


class AuditPort(ABC):
    """Level-based logging/audit interface injected into pipeline components."""

    @abstractmethod
    def error(self, message: str, error: Optional[BaseException] = None, **context):
        pass

    @abstractmethod
    def warn(self, message: str, **context):
        pass

    @abstractmethod
    def info(self, message: str, **context):
        pass

    @abstractmethod
    def audit(self, event: str, **context):
        """Record a business event for the audit trail."""
        pass


class LoggingAuditPort(AuditPort):
    """AuditPort backed by the standard logging module."""

    def __init__(
        self,
        logger_name: str = AUDIT_LOGGER_NAME,
        redact_fields: Iterable[str] = DEFAULT_REDACT_FIELDS
    ):
        self._logger = logging.getLogger(logger_name)
        self.redact_fields = frozenset(f.lower() for f in redact_fields)

    def _format(self, message: str, context: Dict[str, Any]) -> str:
        message = redact_value(message)
        if not context:
            return message
        return f"{message} | {redact(context, self.redact_fields)}"

    def error(self, message: str, error: Optional[BaseException] = None, **context):
        if error is not None:
            context["error"] = f"{type(error).__name__}: {error}"
        self._logger.error(self._format(message, context))

    def warn(self, message: str, **context):
        self._logger.warning(self._format(message, context))

    def info(self, message: str, **context):
        self._logger.info(self._format(message, context))

    def audit(self, event: str, **context):
        context["timestamp"] = datetime.now().isoformat()
        self._logger.info(self._format(f"AUDIT {event}", context))


class NullAuditPort(AuditPort):
    """Discards everything; keeps the events in memory for inspection."""

    def __init__(self):
        self.events = []

    def error(self, message: str, error: Optional[BaseException] = None, **context):
        self.events.append(("error", message, context))

    def warn(self, message: str, **context):
        self.events.append(("warn", message, context))

    def info(self, message: str, **context):
        self.events.append(("info", message, context))

    def audit(self, event: str, **context):
        self.events.append(("audit", event, context))
