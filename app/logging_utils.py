import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Add request_id from context if available and not already present
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Configure Uvicorn loggers to use JSON format
    uvicorn_loggers = [
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ]

    for logger_name in uvicorn_loggers:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


# Successful requests to these paths are logged at DEBUG
QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")


def _level_for(status_code: int, path: str) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


def _request_source(path: str) -> str:
    """Who calls a route: the provider, the cron scheduler, a tenant or the platform."""
    if path.startswith("/webhooks/twilio/"):
        return "twilio"
    if path.startswith("/reminders/"):
        return "scheduler"
    if path.startswith("/messages/"):
        return "tenant"
    return "platform"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Every line carries:
    - ts, level, request_id (an incoming X-Request-ID is kept)
    - method, path, status, latency_ms
    - source: twilio, scheduler, tenant or platform

    Routes attach their own keys with log_request_data(): company_id and
    message_id on sends, the provider MessageSid on webhooks, result,
    processed counts for reminder runs.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        # Set request_id in context for all loggers to use
        token = request_id_ctx.set(request_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - start_time
            path = request.url.path

            # Exclude /metrics endpoint to avoid self-instrumentation noise
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                "source": _request_source(path),
            }
            log_data.update(getattr(request.state, "log_data", {}))

            logging.getLogger("app.requests").log(
                _level_for(response.status_code, path), "Request completed", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def log_request_data(request: Request, **fields) -> None:
    """
    Attach route-specific logging data to the request state.
    This data will be included in the request log by the middleware.
    None values are skipped.

    Args:
        request: FastAPI request object
        **fields: e.g. company_id, message_id, result, processed
    """
    data = getattr(request.state, "log_data", {})
    data.update({key: value for key, value in fields.items() if value is not None})
    request.state.log_data = data
