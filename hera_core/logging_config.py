"""
Structured logging configuration for the Hera Collection services.

Every record is emitted as one JSON document on stdout so the log shipper can
index payment events by request, buyer and M-Pesa checkout id.
"""

import json
import logging
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

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
checkout_id_var: ContextVar[Optional[str]] = ContextVar('checkout_id', default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
    "checkout_id": checkout_id_var,
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter; trace context is pulled from the context variables."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'hera-payments'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
            "location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        trace = current_context()
        if trace:
            log_obj["trace"] = trace

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {"duration_ms": record.duration_ms}

        return json.dumps(log_obj, default=str)


class SensitiveDataFilter(logging.Filter):
    """Masks MSISDNs and credential-looking values before they leave the process."""

    PHONE_PATTERN = re.compile(r'\b(254|0)([17]\d{2})\d{3}(\d{3})\b')
    SECRET_KEYS = ('password', 'passkey', 'token', 'secret', 'authorization', 'consumer_key')

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.PHONE_PATTERN.sub(r'\1\2***\3', message)
        if masked != message:
            record.msg = masked
            record.args = None

        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict):
            record.extra_fields = self._mask_fields(fields)
        return True

    def _mask_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        masked = {}
        for key, value in fields.items():
            if any(secret in key.lower() for secret in self.SECRET_KEYS):
                masked[key] = "***REDACTED***"
            elif isinstance(value, str):
                masked[key] = self.PHONE_PATTERN.sub(r'\1\2***\3', value)
            elif isinstance(value, dict):
                masked[key] = self._mask_fields(value)
            else:
                masked[key] = value
        return masked


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """
    Route all logging through one structured stdout handler.

    Args:
        service_name: Name stamped on every record
        level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    os.environ['SERVICE_NAME'] = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    console_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(console_handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Copies the current trace context into every record's extras."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(current_context())
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})


def current_context() -> Dict[str, str]:
    return {key: var.get() for key, var in _CONTEXT_VARS.items() if var.get()}


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    checkout_id: Optional[str] = None,
) -> None:
    """Bind tracing identifiers for the rest of the current task."""
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(str(user_id))
    if checkout_id:
        checkout_id_var.set(checkout_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request and response with its duration and echoes the
    request id back in the X-Request-ID header.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID'),
        )

        logger = get_logger(__name__)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={'extra_fields': {
                'method': request.method,
                'path': request.url.path,
                'client_host': request.client.host if request.client else None,
            }}
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'duration_ms': (time.perf_counter() - start_time) * 1000,
                }}
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={'extra_fields': {
                'method': request.method,
                'path': request.url.path,
                'status_code': response.status_code,
                'duration_ms': (time.perf_counter() - start_time) * 1000,
            }}
        )
        response.headers['X-Request-ID'] = request_id
        return response
