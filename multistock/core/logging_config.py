"""
Structured logging.

Every record is one JSON object carrying the service identity, the request
trace (request id, correlation id, resolved tenant) and any fields passed as
``extra={"extra_fields": {...}}``. Request context lives in context variables
set by ``RequestLoggingMiddleware`` and the tenant dependency.
"""

import json
import logging
import logging.handlers
import os
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_code_var: ContextVar[Optional[str]] = ContextVar("tenant_code", default=None)

_TRACE_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "tenant_code": tenant_code_var,
}

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "alembic": logging.WARNING,
}

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def current_trace() -> Dict[str, str]:
    """The request context values that are set, by name."""
    return {name: var.get() for name, var in _TRACE_VARS.items() if var.get()}


class StructuredFormatter(logging.Formatter):
    """Renders a record as a single JSON line."""

    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name or os.getenv("SERVICE_NAME", "multistock"),
            "environment": os.getenv("ENVIRONMENT", "development"),
            "version": os.getenv("SERVICE_VERSION", "1.0.0"),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace = current_trace()
        if trace:
            entry["trace"] = trace
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = self._error(record.exc_info)
        custom = getattr(record, "extra_fields", None)
        if custom:
            entry["custom"] = custom
        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            entry["performance"] = {"duration_ms": round(duration_ms, 3)}

        return json.dumps(entry, default=str)

    @staticmethod
    def _error(exc_info) -> Dict[str, Any]:
        exc_type, exc, tb = exc_info
        return {
            "type": exc_type.__name__,
            "message": str(exc),
            "stacktrace": traceback.format_exception(exc_type, exc, tb),
        }


class PerformanceFilter(logging.Filter):
    """Converts a ``duration`` in seconds on the record into ``duration_ms``."""

    def filter(self, record: logging.LogRecord) -> bool:
        duration = getattr(record, "duration", None)
        if duration is not None and not hasattr(record, "duration_ms"):
            record.duration_ms = duration * 1000
        return True


class SecurityFilter(logging.Filter):
    """Masks credentials in messages and in ``extra_fields``."""

    SENSITIVE_KEYS = ("password", "token", "api_key", "secret", "authorization", "cookie", "session_id")
    MASK = "***REDACTED***"

    _pattern = re.compile(
        r"(?i)\b(" + "|".join(SENSITIVE_KEYS) + r")\b(\s*[=:]\s*)([^\s,;&]+)"
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._pattern.sub(rf"\1\2{self.MASK}", record.msg)
        custom = getattr(record, "extra_fields", None)
        if isinstance(custom, dict):
            record.extra_fields = self._mask(custom)
        return True

    def _mask(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        masked = {}
        for key, value in fields.items():
            if any(s in str(key).lower() for s in self.SENSITIVE_KEYS):
                masked[key] = self.MASK
            elif isinstance(value, dict):
                masked[key] = self._mask(value)
            else:
                masked[key] = value
        return masked


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(PerformanceFilter())
    handler.addFilter(SecurityFilter())
    return handler


def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """Replace the root handlers with JSON output to stdout and, optionally, a rotating file."""
    os.environ["SERVICE_NAME"] = service_name
    formatter = StructuredFormatter(service_name)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []
    if enable_console:
        root.addHandler(_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        root.addHandler(_handler(
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
            ),
            formatter,
        ))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    root.info(
        "Logging initialized",
        extra={"extra_fields": {"service": service_name, "level": level, "file": log_file}},
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Copies the request context onto every record as plain attributes."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        for name, value in current_trace().items():
            extra.setdefault(name, value)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    tenant_code: Optional[str] = None,
) -> None:
    """Set the given context values; ``None`` leaves a value untouched."""
    for var, value in (
        (request_id_var, request_id),
        (correlation_id_var, correlation_id),
        (tenant_code_var, tenant_code),
    ):
        if value:
            var.set(value)


def clear_request_context() -> None:
    for var in _TRACE_VARS.values():
        var.set(None)


def generate_request_id() -> str:
    return str(uuid.uuid4())


logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, logs start, completion or failure with duration, echoes X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        clear_request_context()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get("X-Correlation-ID"),
        )

        fields = {"method": request.method, "path": request.url.path}
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={"extra_fields": {**fields, "client_host": request.client.host if request.client else None}},
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={"extra_fields": fields, "duration": time.perf_counter() - started},
            )
            raise

        tenant_code = getattr(request.state, "tenant_code", None)
        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                "extra_fields": {**fields, "status_code": response.status_code, "tenant_code": tenant_code},
                "duration": time.perf_counter() - started,
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response
