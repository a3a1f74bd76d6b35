"""
Membership Reconciliation - Structured JSON Logging

One JSON object per line in production, plain text in development.
Request context (request id, confirming operator) lives in context
variables, so concurrent requests never see each other's values, and is
stamped onto every record by RequestContextFilter.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_operator_id: ContextVar[Optional[str]] = ContextVar("operator_id", default=None)

# Attributes every LogRecord carries; anything else arrived through extra=
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "request_id", "operator_id"}


class JSONFormatter(logging.Formatter):
    """Render records as JSON lines with ``extra=`` fields under ``extra``."""

    def __init__(self, service_name: str = "membership-reconciliation"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "request_id": getattr(record, "request_id", None),
            "operator_id": getattr(record, "operator_id", None),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info and record.exc_info[0]:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class RequestContextFilter(logging.Filter):
    """Copy the current request context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.operator_id = _operator_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "membership-reconciliation"
) -> logging.Logger:
    """
    Configure the root logger once at startup.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, human-readable text otherwise
        service_name: Value of the ``service`` field in JSON output

    Returns:
        The root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
        ))
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    # Per-request access lines come from our own middleware
    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_context(request_id: Optional[str] = None, operator_id: Optional[str] = None):
    """Update the context of the current request. Omitted values are kept."""
    if request_id is not None:
        _request_id.set(request_id)
    if operator_id is not None:
        _operator_id.set(operator_id)


def clear_request_context():
    _request_id.set(None)
    _operator_id.set(None)
