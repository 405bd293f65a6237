"""
Structured Logging Configuration

Provides:
- Correlation IDs for tracing one verification or re-check run
- Participant context on every record emitted inside that scope
- JSON formatting for machine parsing, plain formatting for consoles
- Wallet masking so full addresses never reach the logs
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
participant_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "participant_id", default=None
)


def mask_wallet(address: Optional[str]) -> str:
    """First 8 characters of a wallet address, for logs."""
    if not address:
        return "<none>"
    return address[:8] + "..."


class CorrelationContext:
    """Context manager for setting correlation context."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        participant_id: Optional[Union[str, int]] = None,
    ):
        self.correlation_id = correlation_id or str(uuid4())
        self.participant_id = str(participant_id) if participant_id is not None else None
        self._tokens = []

    def __enter__(self):
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.participant_id:
            self._tokens.append((participant_id_var, participant_id_var.set(self.participant_id)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        participant_id = participant_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id
        if participant_id:
            log_data["participant_id"] = participant_id

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        parts = [
            f"[{timestamp}]",
            f"[{record.levelname}]",
            f"[{record.name}]",
            record.getMessage(),
        ]

        context_parts = []
        correlation_id = correlation_id_var.get()
        participant_id = participant_id_var.get()
        if correlation_id:
            context_parts.append(f"correlation_id={correlation_id[:8]}")
        if participant_id:
            context_parts.append(f"participant_id={participant_id}")
        if context_parts:
            parts.append(f"[{', '.join(context_parts)}]")

        if record.exc_info:
            exc_text = "".join(traceback.format_exception(*record.exc_info))
            parts.append(f"\n{exc_text}")

        return " ".join(parts)


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
    stream=None,
) -> logging.Logger:
    """
    Configure logging for the service.

    Args:
        level: Logging level name or number
        json_format: JSON lines when True, plain text otherwise
        log_file: Optional rotating log file in addition to stdout
        extra_fields: Fields added to every JSON record (e.g. service name)
        stream: Console stream, stdout by default

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter(extra_fields=extra_fields)
    else:
        formatter = StructuredFormatter()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger
