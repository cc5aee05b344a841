"""
Logging configuration for courier.
JSON structured logging for log shippers; human-readable text for local dev.

Workers bind per-item fields with ``log_context`` (``worker``, ``message_id``,
``fallback_item``); every handler stamps them onto the records it emits, so a
single dispatch or replay can be followed across the store, writer and queue
loggers.
"""

import json
import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(context_text)s: %(message)s"

_context: ContextVar[dict[str, Any]] = ContextVar("courier_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every record logged inside the block (nests, task-local)."""
    token = _context.set({**_context.get(), **fields})
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = current_context()
        record.context = fields
        record.context_text = (
            " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]" if fields else ""
        )
        return True


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter; context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        context = getattr(record, "context", None)
        log.update(current_context() if context is None else context)
        log["message"] = record.getMessage()
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def setup_logging(log_level: str, logs_dir: str, json_logs: bool) -> None:
    """Configure root logger with appropriate format and handlers."""
    os.makedirs(logs_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    context_filter = ContextFilter()

    console = logging.StreamHandler(sys.stdout)
    if json_logs:
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%H:%M:%S"))

    # 10MB per file, keep 5 backups; the file is always text so it stays greppable
    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(logs_dir, "courier.log"),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    handlers: list[logging.Handler] = [console, file_handler]
    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(context_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Silence noisy third-party loggers
    for name in ("httpx", "httpcore", "telegram", "aiohttp.access"):
        logging.getLogger(name).setLevel(logging.WARNING)
