"""Structured JSON audit logging for the download proxy.

Every line carries the request it belongs to (id, method, path) so a
geofence denial, the upstream fetch and the end of the stream for one
download can be joined downstream. Optional file output via AUDIT_LOG_FILE.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone

from geoproxy.config.settings import get_settings


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    method: str
    path: str


request_context_var: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def bind_request(method: str, path: str) -> str:
    """Start the log context for an inbound request and return its id."""
    request_id = uuid.uuid4().hex[:12]
    request_context_var.set(RequestContext(request_id=request_id, method=method, path=path))
    return request_id


def current_request_id() -> str:
    context = request_context_var.get()
    return context.request_id if context else ""


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = request_context_var.get()
        if context is not None:
            log_entry["request_id"] = context.request_id
            log_entry["method"] = context.method
            log_entry["path"] = context.path
        if hasattr(record, "audit_data"):
            log_entry.update(record.audit_data)
        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Configure the audit logger with JSON output."""
    settings = get_settings()

    logger = logging.getLogger("geoproxy.audit")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False


def get_audit_logger() -> logging.Logger:
    return logging.getLogger("geoproxy.audit")


class TransferTimer:
    """Latency and byte count of an upstream transfer.

    Wrap the fetch in ``with TransferTimer() as timer`` to freeze the
    elapsed time at exit, or keep one open while a body streams and call
    ``record`` per chunk.
    """

    def __init__(self, deadline_seconds: float = 0):
        self.deadline_seconds = deadline_seconds
        self.bytes_sent = 0
        self._start = time.perf_counter()
        self._end: float | None = None

    def __enter__(self):
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *args):
        self._end = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000, 2)

    def record(self, chunk: bytes) -> None:
        self.bytes_sent += len(chunk)

    def expired(self) -> bool:
        """True once a positive deadline has passed."""
        return self.deadline_seconds > 0 and self.elapsed_ms > self.deadline_seconds * 1000

    def audit_data(self) -> dict:
        return {"bytes_sent": self.bytes_sent, "elapsed_ms": self.elapsed_ms}
