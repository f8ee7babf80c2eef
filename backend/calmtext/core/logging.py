"""
CalmText - Structured Logging

Every log line carries the per-message correlation id and the masked
sender, taken from context variables set by LogContext. Crisis audit
records go through StructuredLogger.alert() at the ALERT level so no level
filter can drop them.

Phone numbers never reach a handler in cleartext: context values and any
`data=` payload are masked by the formatters.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from calmtext.sms.privacy import mask_phone_number

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

ALERT = 45
logging.addLevelName(ALERT, "ALERT")

# Third-party loggers that log every request at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "twilio.http_client", "asyncpg")


# =============================================================================
# Masking
# =============================================================================

SENSITIVE_KEYS = frozenset({
    "phone", "phone_number", "from", "to", "user_id",
    "password", "token", "secret", "key", "sid",
})
_SENSITIVE_SUFFIXES = tuple(f"_{k}" for k in SENSITIVE_KEYS)


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    return key in SENSITIVE_KEYS or key.endswith(_SENSITIVE_SUFFIXES)


def mask_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of `data` with sensitive values masked, recursing into dicts.

    Strings keep their last 4 digits (phone numbers stay recognizable to
    an operator); other values become "[REDACTED]".
    """
    masked: Dict[str, Any] = {}
    for key, value in data.items():
        if _is_sensitive(key):
            masked[key] = mask_phone_number(value) if isinstance(value, str) else "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value
    return masked


def _context() -> Dict[str, str]:
    fields = {}
    correlation_id = correlation_id_var.get()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    user_id = user_id_var.get()
    if user_id:
        fields["user"] = mask_phone_number(user_id)
    return fields


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line, for production log shipping.

        {"timestamp": "...Z", "level": "ALERT", "logger": "calmtext.audit",
         "message": "Crisis detected", "correlation_id": "msg_...",
         "user": "***1234", "event_type": "crisis_detected", "data": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context())

        event_type = getattr(record, "event_type", None)
        if event_type:
            entry["event_type"] = event_type

        data = getattr(record, "data", None)
        if data:
            entry["data"] = mask_sensitive_data(data)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line format for development consoles."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        context = _context()
        context_str = ""
        if context:
            short = {"correlation_id": "msg"}
            context_str = " [" + ", ".join(f"{short.get(k, k)}={v}" for k, v in context.items()) + "]"

        line = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        event_type = getattr(record, "event_type", None)
        if event_type:
            line += f" event={event_type}"

        data = getattr(record, "data", None)
        if data:
            line += " " + json.dumps(mask_sensitive_data(data), default=str)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


# =============================================================================
# Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
    quiet_loggers: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Root log level name
        json_format: JSON lines (production) instead of the console format
        quiet_loggers: Loggers raised to WARNING
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Context
# =============================================================================

class LogContext:
    """
    Bind a correlation id and sender to every log line in a block.

        with LogContext(correlation_id="msg_abc123", user_id="+14155551234"):
            logger.info("Processing message")

    Values are kept raw in the context variables and masked on output.
    """

    def __init__(self, correlation_id: Optional[str] = None, user_id: Optional[str] = None):
        self._values = {correlation_id_var: correlation_id, user_id_var: user_id}
        self._tokens = []

    def __enter__(self) -> "LogContext":
        self._tokens = [var.set(value) for var, value in self._values.items() if value]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens = []
        return False


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger:
    """
    Thin wrapper over a stdlib logger that attaches `data` and `event_type`
    to the record.

        audit = get_logger("calmtext.audit")
        audit.alert("Crisis detected", event_type="crisis_detected", data={...})
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def log(
        self,
        level: int,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        event_type: Optional[str] = None,
        exc_info: bool = False,
    ) -> None:
        extra: Dict[str, Any] = {}
        if data:
            extra["data"] = data
        if event_type:
            extra["event_type"] = event_type
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        self.log(logging.INFO, message, data, **kwargs)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        self.log(logging.WARNING, message, data, **kwargs)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        self.log(logging.ERROR, message, data, **kwargs)

    def alert(self, message: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        """Crisis audit record."""
        self.log(ALERT, message, data, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)
